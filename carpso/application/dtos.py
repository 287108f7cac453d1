# File: carpso/application/dtos.py
"""
Data Transfer Objects (DTOs) for the Carpso Engine

This module defines DTOs for data transfer between layers:
1. Input DTOs - Validated command payloads from clients
2. Output DTOs - Serializable views of domain objects
3. Query DTOs - Filters for ledger queries

DTO Principles:
- Validation at creation (pydantic)
- No business logic, only data and domain conversion
- JSON-friendly output via model_dump(mode="json")
"""

from typing import Dict, List, Optional, Any
from datetime import datetime, date
from decimal import Decimal
import json

from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

from ..domain.models import (
    PricingRule, TimeCondition, UserTier, PassType, RecordStatus,
    CostEstimate, ActivePass, UserPass, QueueEntry, QueuePosition,
    DEFAULT_PAYMENT_METHOD, DAY_NAMES
)
from ..domain.aggregates import ParkingRecord

HHMM_PATTERN = r'^([01]\d|2[0-3]):[0-5]\d$'


# ============================================================================
# BASE DTO CLASSES
# ============================================================================

class BaseDTO(BaseModel):
    """Base DTO with common functionality"""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        use_enum_values=True,
    )

    def to_dict(self, exclude_none: bool = False, **kwargs) -> Dict[str, Any]:
        """Convert DTO to a JSON-friendly dictionary"""
        return self.model_dump(mode="json", exclude_none=exclude_none, **kwargs)

    def to_json(self, **kwargs) -> str:
        """Convert DTO to JSON string"""
        return self.model_dump_json(**kwargs)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BaseDTO':
        """Create DTO from dictionary"""
        return cls.model_validate(data)

    @classmethod
    def from_json(cls, json_str: str) -> 'BaseDTO':
        """Create DTO from JSON string"""
        return cls.model_validate(json.loads(json_str))


# ============================================================================
# PRICING DTOs
# ============================================================================

class TimeConditionDTO(BaseDTO):
    days_of_week: Optional[List[str]] = None
    start_time: Optional[str] = Field(default=None, pattern=HHMM_PATTERN)
    end_time: Optional[str] = Field(default=None, pattern=HHMM_PATTERN)

    @field_validator('days_of_week')
    @classmethod
    def validate_days(cls, v):
        if v is not None:
            unknown = [day for day in v if day not in DAY_NAMES]
            if unknown:
                raise ValueError(f"Unknown day names: {unknown}")
        return v

    def to_domain(self) -> TimeCondition:
        return TimeCondition(
            days_of_week=tuple(self.days_of_week) if self.days_of_week else None,
            start_time=self.start_time,
            end_time=self.end_time,
        )


class PricingRuleDTO(BaseDTO):
    """A pricing rule or pass definition as exchanged with admin clients"""
    rule_id: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    priority: int
    lot_id: Optional[str] = None
    base_rate_per_hour: Optional[Decimal] = Field(default=None, ge=0)
    flat_rate: Optional[Decimal] = Field(default=None, ge=0)
    flat_rate_duration_minutes: Optional[int] = Field(default=None, gt=0)
    discount_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)
    time_condition: Optional[TimeConditionDTO] = None
    event_condition: Optional[str] = None
    user_tier_condition: Optional[List[UserTier]] = None
    is_pass: bool = False
    pass_type: Optional[PassType] = None

    @model_validator(mode='after')
    def validate_rate_mode(self):
        if self.base_rate_per_hour is not None and self.flat_rate is not None:
            raise ValueError("A rule cannot define both an hourly and a flat rate")
        return self

    def to_domain(self) -> PricingRule:
        return PricingRule(
            rule_id=self.rule_id,
            description=self.description,
            priority=self.priority,
            lot_id=self.lot_id,
            base_rate_per_hour=self.base_rate_per_hour,
            flat_rate=self.flat_rate,
            flat_rate_duration_minutes=self.flat_rate_duration_minutes,
            discount_percentage=self.discount_percentage,
            time_condition=self.time_condition.to_domain() if self.time_condition else None,
            event_condition=self.event_condition,
            user_tier_condition=tuple(self.user_tier_condition) if self.user_tier_condition else None,
            is_pass=self.is_pass,
            pass_type=self.pass_type,
        )

    @classmethod
    def from_domain(cls, rule: PricingRule) -> 'PricingRuleDTO':
        return cls.model_validate(rule.to_dict())


class CostEstimateRequestDTO(BaseDTO):
    lot_id: str = Field(..., min_length=1)
    duration_minutes: int = Field(..., ge=1, description="Requested parking duration")
    user_id: Optional[str] = None
    user_tier: UserTier = UserTier.BASIC
    at: Optional[datetime] = Field(default=None, description="Moment to price at; defaults to now")


class CostEstimateDTO(BaseDTO):
    cost: Decimal
    applied_rule: str
    is_covered_by_pass: bool = False

    @classmethod
    def from_domain(cls, estimate: CostEstimate) -> 'CostEstimateDTO':
        return cls(
            cost=estimate.cost,
            applied_rule=estimate.applied_rule,
            is_covered_by_pass=estimate.is_covered_by_pass,
        )


class PassPurchaseRequestDTO(BaseDTO):
    user_id: str = Field(..., min_length=1)
    pass_rule_id: str = Field(..., min_length=1)


class UserPassDTO(BaseDTO):
    pass_id: str
    user_id: str
    pass_rule_id: str
    lot_id: Optional[str] = None
    purchase_date: datetime
    expiry_date: datetime

    @classmethod
    def from_domain(cls, user_pass: UserPass) -> 'UserPassDTO':
        return cls.model_validate(user_pass)


class ActivePassDTO(UserPassDTO):
    description: str
    pass_type: Optional[PassType] = None

    @classmethod
    def from_active_pass(cls, active: ActivePass) -> 'ActivePassDTO':
        user_pass = active.user_pass
        return cls(
            pass_id=user_pass.pass_id,
            user_id=user_pass.user_id,
            pass_rule_id=user_pass.pass_rule_id,
            lot_id=user_pass.lot_id,
            purchase_date=user_pass.purchase_date,
            expiry_date=user_pass.expiry_date,
            description=active.rule.description,
            pass_type=active.rule.pass_type,
        )


# ============================================================================
# LEDGER DTOs
# ============================================================================

class RecordCreateRequestDTO(BaseDTO):
    user_id: str = Field(..., min_length=1)
    lot_id: str = Field(..., min_length=1)
    spot_id: str = Field(..., min_length=1)


class RecordCompleteRequestDTO(BaseDTO):
    record_id: str = Field(..., min_length=1)
    end_time: Optional[datetime] = None
    payment_method: str = DEFAULT_PAYMENT_METHOD
    user_tier: UserTier = UserTier.BASIC


class RecordQueryDTO(BaseDTO):
    """Ledger filter; lot_id 'all' means every lot, end_date is inclusive"""
    user_id: Optional[str] = None
    lot_id: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    @model_validator(mode='after')
    def validate_range(self):
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class ParkingRecordDTO(BaseDTO):
    record_id: str
    user_id: str
    lot_id: str
    spot_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    cost: Decimal
    status: RecordStatus
    payment_method: Optional[str] = None
    applied_pricing_rule: Optional[str] = None

    @classmethod
    def from_domain(cls, record: ParkingRecord) -> 'ParkingRecordDTO':
        return cls.model_validate(record)


# ============================================================================
# QUEUE DTOs
# ============================================================================

class QueueRequestDTO(BaseDTO):
    user_id: str = Field(..., min_length=1)
    spot_id: str = Field(..., min_length=1)


class SpotRequestDTO(BaseDTO):
    spot_id: str = Field(..., min_length=1)


class UserRequestDTO(BaseDTO):
    user_id: str = Field(..., min_length=1)


class QueueEntryDTO(BaseDTO):
    user_id: str
    spot_id: str
    queue_timestamp: datetime
    notified: bool

    @classmethod
    def from_domain(cls, entry: QueueEntry) -> 'QueueEntryDTO':
        return cls.model_validate(entry)


class QueuePositionDTO(BaseDTO):
    spot_id: str
    position: int = Field(..., ge=1)

    @classmethod
    def from_domain(cls, position: QueuePosition) -> 'QueuePositionDTO':
        return cls.model_validate(position)
