# File: carpso/domain/models.py
"""
Domain Models for the Carpso Pricing & Spot-Lifecycle Engine
Following Domain-Driven Design (DDD) principles with rich domain models

This module contains:
1. Value Objects: Immutable objects with no identity, only values
2. Enums: Type enumerations for domain concepts
3. Entities: Pricing rules, passes, queue entries and parking lots
4. Domain Exceptions: The error taxonomy shared by every layer
5. Utility functions for money and time arithmetic

All models include validation and business logic.
"""

from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, Tuple
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
import math
import re
import uuid


# Weekday names indexed by datetime.weekday() (Monday == 0)
DAY_NAMES: Tuple[str, ...] = ('Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat', 'Sun')

DEFAULT_HOURLY_RATE = Decimal('2.50')
DEFAULT_PAYMENT_METHOD = "Wallet"
PASS_PAYMENT_METHOD = "Pass"

MINUTES_PER_HOUR = 60
MINUTES_PER_DAY = 24 * 60

_HHMM_PATTERN = re.compile(r'^([01]\d|2[0-3]):[0-5]\d$')


# ============================================================================
# DOMAIN EXCEPTIONS
# ============================================================================

class CarpsoError(Exception):
    """Base exception for Carpso domain and service errors"""
    pass


class InvalidInputError(CarpsoError, ValueError):
    """Raised before any mutation when a required field is empty or a value is out of range"""
    pass


class InvalidPassDefinitionError(InvalidInputError):
    """Raised when a pass is purchased against a rule that cannot back a pass"""
    pass


class NotFoundError(CarpsoError, LookupError):
    """Raised when a referenced rule, record or pass does not exist"""
    pass


# ============================================================================
# ENUMS FOR DOMAIN TYPES
# ============================================================================

class UserTier(str, Enum):
    """Subscription tier of a user; rules may be restricted to a subset"""
    BASIC = "Basic"
    PREMIUM = "Premium"


class PassType(str, Enum):
    """Time-box of a purchasable pass"""
    HOURLY = "Hourly"
    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"
    YEARLY = "Yearly"

    @classmethod
    def infer(cls, duration_minutes: Optional[int]) -> Optional['PassType']:
        """
        Infer the pass type from the pass duration
        Returns None when the duration matches no known time-box
        """
        if not duration_minutes:
            return None

        days = duration_minutes / MINUTES_PER_DAY
        if duration_minutes == MINUTES_PER_HOUR:
            return cls.HOURLY
        if duration_minutes == MINUTES_PER_DAY:
            return cls.DAILY
        if duration_minutes == 7 * MINUTES_PER_DAY:
            return cls.WEEKLY
        if 28 <= days <= 31:
            return cls.MONTHLY
        if days >= 365:
            return cls.YEARLY
        return None


class RecordStatus(str, Enum):
    """Lifecycle status of a parking record"""
    ACTIVE = "Active"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


# ============================================================================
# DOMAIN PRIMITIVES / VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class TimeCondition:
    """
    Value Object: Days-of-week and HH:MM window during which a rule applies
    The window is half-open [start_time, end_time) and does not wrap midnight
    """
    days_of_week: Optional[Tuple[str, ...]] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None

    def __post_init__(self):
        """Validate day names and HH:MM strings"""
        if self.days_of_week is not None:
            days = tuple(self.days_of_week)
            unknown = [day for day in days if day not in DAY_NAMES]
            if unknown:
                raise InvalidInputError(f"Unknown day names in time condition: {unknown}")
            object.__setattr__(self, 'days_of_week', days)

        for label, value in (("start_time", self.start_time), ("end_time", self.end_time)):
            if value is not None and not _HHMM_PATTERN.match(value):
                raise InvalidInputError(f"{label} must be HH:MM, got: {value}")

    def matches(self, moment: datetime) -> bool:
        """Check whether the given moment falls inside the condition"""
        if self.days_of_week and DAY_NAMES[moment.weekday()] not in self.days_of_week:
            return False

        current = format_hhmm(moment)
        if self.start_time and current < self.start_time:
            return False
        if self.end_time and current >= self.end_time:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "days_of_week": list(self.days_of_week) if self.days_of_week else None,
            "start_time": self.start_time,
            "end_time": self.end_time,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['TimeCondition']:
        if not data:
            return None
        days = data.get("days_of_week")
        return cls(
            days_of_week=tuple(days) if days else None,
            start_time=data.get("start_time"),
            end_time=data.get("end_time"),
        )


@dataclass(frozen=True)
class CostEstimate:
    """Value Object: Result of a cost calculation"""
    cost: Decimal
    applied_rule: str
    is_covered_by_pass: bool = False

    def __post_init__(self):
        if self.cost < Decimal('0'):
            raise InvalidInputError("Cost cannot be negative")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cost": float(self.cost),
            "applied_rule": self.applied_rule,
            "is_covered_by_pass": self.is_covered_by_pass,
        }


@dataclass(frozen=True)
class QueuePosition:
    """Value Object: A user's 1-based position in one spot queue"""
    spot_id: str
    position: int


# ============================================================================
# DOMAIN ENTITIES
# ============================================================================

@dataclass
class ParkingLot:
    """Entity: A parking location whose spots can be reserved"""
    id: str
    name: str
    address: str = ""
    capacity: int = 0
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def __post_init__(self):
        if not self.id:
            raise InvalidInputError("Parking lot id cannot be empty")
        if self.capacity < 0:
            raise InvalidInputError("Parking lot capacity cannot be negative")


@dataclass
class PricingRule:
    """
    Entity: A pricing rule or pass definition

    A rule either charges by the hour, charges a flat amount, or carries only
    a discount and borrows the rate of the next applicable rule. Rules are
    resolved by ascending priority.
    """
    rule_id: str
    description: str
    priority: int
    lot_id: Optional[str] = None
    base_rate_per_hour: Optional[Decimal] = None
    flat_rate: Optional[Decimal] = None
    flat_rate_duration_minutes: Optional[int] = None
    discount_percentage: Optional[Decimal] = None
    time_condition: Optional[TimeCondition] = None
    event_condition: Optional[str] = None
    user_tier_condition: Optional[Tuple[UserTier, ...]] = None
    is_pass: bool = False
    pass_type: Optional[PassType] = None

    def __post_init__(self):
        """Normalise numeric fields to Decimal and validate the rule"""
        for name in ('base_rate_per_hour', 'flat_rate', 'discount_percentage'):
            value = getattr(self, name)
            if value is not None and not isinstance(value, Decimal):
                setattr(self, name, Decimal(str(value)))

        if self.user_tier_condition is not None:
            self.user_tier_condition = tuple(UserTier(tier) for tier in self.user_tier_condition)

        if isinstance(self.time_condition, dict):
            self.time_condition = TimeCondition.from_dict(self.time_condition)

        if self.pass_type is not None:
            self.pass_type = PassType(self.pass_type)

        self._validate()

    def _validate(self) -> None:
        if not self.rule_id or not self.rule_id.strip():
            raise InvalidInputError("Rule id cannot be empty")

        if not self.description or not self.description.strip():
            raise InvalidInputError("Rule description cannot be empty")

        if self.base_rate_per_hour is not None and self.flat_rate is not None:
            raise InvalidInputError(
                f"Rule {self.rule_id} defines both an hourly and a flat rate"
            )

        for name in ('base_rate_per_hour', 'flat_rate'):
            value = getattr(self, name)
            if value is not None and value < Decimal('0'):
                raise InvalidInputError(f"{name} cannot be negative for rule {self.rule_id}")

        if self.flat_rate_duration_minutes is not None and self.flat_rate_duration_minutes <= 0:
            raise InvalidInputError(f"Flat rate duration must be positive for rule {self.rule_id}")

        if self.discount_percentage is not None:
            if not Decimal('0') <= self.discount_percentage <= Decimal('100'):
                raise InvalidInputError(f"Discount must be between 0 and 100 for rule {self.rule_id}")

    @property
    def has_flat_rate(self) -> bool:
        return self.flat_rate is not None

    @property
    def has_hourly_rate(self) -> bool:
        return self.base_rate_per_hour is not None

    @property
    def defines_rate(self) -> bool:
        """A rule without a rate of its own is a discount-only rule"""
        return self.has_flat_rate or self.has_hourly_rate

    @property
    def can_back_pass(self) -> bool:
        """Pass rules need a price and a validity period"""
        return (
            self.is_pass
            and self.flat_rate is not None
            and self.flat_rate_duration_minutes is not None
        )

    def applies_to_lot(self, lot_id: str) -> bool:
        return self.lot_id is None or self.lot_id == lot_id

    def applies_to_tier(self, tier: UserTier) -> bool:
        return not self.user_tier_condition or UserTier(tier) in self.user_tier_condition

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "rule_id": self.rule_id,
            "lot_id": self.lot_id,
            "description": self.description,
            "base_rate_per_hour": _decimal_to_str(self.base_rate_per_hour),
            "flat_rate": _decimal_to_str(self.flat_rate),
            "flat_rate_duration_minutes": self.flat_rate_duration_minutes,
            "discount_percentage": _decimal_to_str(self.discount_percentage),
            "time_condition": self.time_condition.to_dict() if self.time_condition else None,
            "event_condition": self.event_condition,
            "user_tier_condition": (
                [tier.value for tier in self.user_tier_condition]
                if self.user_tier_condition else None
            ),
            "is_pass": self.is_pass,
            "pass_type": self.pass_type.value if self.pass_type else None,
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PricingRule':
        """Create rule from dictionary"""
        payload = dict(data)
        payload["time_condition"] = TimeCondition.from_dict(payload.get("time_condition"))
        tiers = payload.get("user_tier_condition")
        payload["user_tier_condition"] = tuple(tiers) if tiers else None
        return cls(**payload)


@dataclass
class UserPass:
    """Entity: A purchased, time-boxed pass owned by a user"""
    user_id: str
    pass_rule_id: str
    purchase_date: datetime
    expiry_date: datetime
    lot_id: Optional[str] = None
    pass_id: str = field(default_factory=lambda: f"pass_{uuid.uuid4().hex[:12]}")

    def is_active(self, now: datetime) -> bool:
        return self.expiry_date > now

    def covers_lot(self, lot_id: str) -> bool:
        return self.lot_id is None or self.lot_id == lot_id


@dataclass(frozen=True)
class ActivePass:
    """Read model: an active pass joined with the rule that defines it"""
    user_pass: UserPass
    rule: PricingRule

    @property
    def expiry_date(self) -> datetime:
        return self.user_pass.expiry_date


@dataclass
class QueueEntry:
    """Entity: A user waiting for a specific spot"""
    user_id: str
    spot_id: str
    queue_timestamp: datetime = field(default_factory=datetime.now)
    notified: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["queue_timestamp"] = self.queue_timestamp.isoformat()
        return data


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def to_money(amount: Decimal) -> Decimal:
    """Round an amount to cents (half up)"""
    return Decimal(amount).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positive values"""
    return int(math.floor(value + 0.5))


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes between two instants, rounded half up"""
    return round_half_up((end - start) / timedelta(minutes=1))


def format_hhmm(moment: datetime) -> str:
    return f"{moment.hour:02d}:{moment.minute:02d}"


def generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _decimal_to_str(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None
