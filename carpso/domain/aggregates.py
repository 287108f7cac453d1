# File: carpso/domain/aggregates.py
"""
Aggregate Roots for the Carpso Pricing & Spot-Lifecycle Engine
Following Domain-Driven Design (DDD) Aggregate Pattern

Aggregates:
1. ParkingRecord - One parking session from reservation to completion
2. SpotQueue - The ordered wait-list for one contended spot

Key Concepts:
- Aggregate roots enforce business invariants
- Entities within aggregates are accessed through the root
- All modifications go through aggregate root methods
"""

from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any
from datetime import datetime
from decimal import Decimal
import logging

from .models import (
    CostEstimate, QueueEntry, QueuePosition, RecordStatus,
    InvalidInputError, DEFAULT_PAYMENT_METHOD, PASS_PAYMENT_METHOD,
    generate_id, minutes_between, to_money
)


# ============================================================================
# PARKING RECORD AGGREGATE
# ============================================================================

@dataclass
class ParkingRecord:
    """
    Aggregate Root: Parking Record
    Tracks a parking session from confirmation to completion.
    A record is mutated exactly once, when it leaves the Active status.
    """
    user_id: str
    lot_id: str
    spot_id: str
    start_time: datetime = field(default_factory=datetime.now)
    record_id: str = field(default_factory=lambda: generate_id("rec"))
    end_time: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    cost: Decimal = Decimal('0.00')
    status: RecordStatus = RecordStatus.ACTIVE
    payment_method: Optional[str] = None
    applied_pricing_rule: Optional[str] = None

    def __post_init__(self):
        """Validate parking record invariants"""
        for name in ('user_id', 'lot_id', 'spot_id'):
            if not getattr(self, name):
                raise InvalidInputError(f"Parking record {name} cannot be empty")

        if not isinstance(self.cost, Decimal):
            self.cost = Decimal(str(self.cost))
        if self.cost < Decimal('0'):
            raise InvalidInputError("Parking record cost cannot be negative")

        self.status = RecordStatus(self.status)

    @property
    def is_active(self) -> bool:
        return self.status == RecordStatus.ACTIVE

    # ========================================================================
    # SESSION OPERATIONS
    # ========================================================================

    def complete(
        self,
        end_time: datetime,
        cost_details: CostEstimate,
        payment_method: str = DEFAULT_PAYMENT_METHOD
    ) -> None:
        """
        Complete the session with its final cost
        Duration is derived from the stored start time only.
        """
        if not self.is_active:
            raise ValueError(f"Cannot complete record {self.record_id} with status {self.status.value}")

        if end_time < self.start_time:
            raise InvalidInputError("End time must not be before start time")

        self.end_time = end_time
        self.duration_minutes = minutes_between(self.start_time, end_time)
        self.cost = max(to_money(cost_details.cost), Decimal('0.00'))
        self.status = RecordStatus.COMPLETED
        self.payment_method = PASS_PAYMENT_METHOD if cost_details.is_covered_by_pass else payment_method
        self.applied_pricing_rule = cost_details.applied_rule

        logging.getLogger(self.__class__.__name__).info(
            f"Completed record {self.record_id}: {self.duration_minutes} min, cost {self.cost}"
        )

    def cancel(self, cancelled_at: Optional[datetime] = None) -> None:
        """Cancel an active session without charge"""
        if not self.is_active:
            raise ValueError(f"Cannot cancel record {self.record_id} with status {self.status.value}")

        self.end_time = cancelled_at or datetime.now()
        self.cost = Decimal('0.00')
        self.status = RecordStatus.CANCELLED

    def to_dict(self) -> Dict[str, Any]:
        """Flat representation used for export and transport"""
        return {
            "record_id": self.record_id,
            "user_id": self.user_id,
            "lot_id": self.lot_id,
            "spot_id": self.spot_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_minutes": self.duration_minutes,
            "cost": str(self.cost),
            "status": self.status.value,
            "payment_method": self.payment_method,
            "applied_pricing_rule": self.applied_pricing_rule,
        }


# ============================================================================
# SPOT QUEUE AGGREGATE
# ============================================================================

class SpotQueue:
    """
    Aggregate Root: FIFO wait-list for one spot

    The entry list is the only source of truth; positions are derived from
    list order (1-based) whenever they are asked for.
    """

    def __init__(self, spot_id: str, entries: Optional[List[QueueEntry]] = None):
        if not spot_id:
            raise InvalidInputError("Spot id cannot be empty")
        self.spot_id = spot_id
        self._entries: List[QueueEntry] = list(entries or [])

    @property
    def entries(self) -> List[QueueEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def contains(self, user_id: str) -> bool:
        return any(entry.user_id == user_id for entry in self._entries)

    def position_of(self, user_id: str) -> Optional[int]:
        for index, entry in enumerate(self._entries):
            if entry.user_id == user_id:
                return index + 1
        return None

    def position_for(self, user_id: str) -> Optional[QueuePosition]:
        position = self.position_of(user_id)
        if position is None:
            return None
        return QueuePosition(spot_id=self.spot_id, position=position)

    def head(self) -> Optional[QueueEntry]:
        return self._entries[0] if self._entries else None

    def join(self, user_id: str, joined_at: Optional[datetime] = None) -> Optional[int]:
        """
        Append a user to the wait-list
        Returns: 1-based position, or None if the user is already queued
        """
        if not user_id:
            raise InvalidInputError("User id cannot be empty")

        if self.contains(user_id):
            return None

        self._entries.append(QueueEntry(
            user_id=user_id,
            spot_id=self.spot_id,
            queue_timestamp=joined_at or datetime.now(),
            notified=False,
        ))
        return len(self._entries)

    def leave(self, user_id: str) -> Optional[QueueEntry]:
        """Remove a user's entry; returns it, or None if absent"""
        for index, entry in enumerate(self._entries):
            if entry.user_id == user_id:
                return self._entries.pop(index)
        return None

    def mark_head_notified(self) -> bool:
        """
        Flag the head entry as notified
        Returns: True only on the False -> True transition
        """
        head = self.head()
        if head is None or head.notified:
            return False
        head.notified = True
        return True

    def pop_front(self) -> Optional[QueueEntry]:
        if not self._entries:
            return None
        return self._entries.pop(0)
