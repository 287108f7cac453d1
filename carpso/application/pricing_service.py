# File: carpso/application/pricing_service.py
"""
Pricing & Pass Application Service

This module implements the use cases around parking cost:
1. Estimating the cost of a session (pass coverage first, then rules)
2. Purchasing passes and listing a user's active passes
3. Administering pricing rules

Key Principles:
- Cost estimation never raises; it degrades to a zero-cost fallback
- Mutations check connectivity first and run inside a unit of work
- Domain events are published after the unit of work commits
"""

from typing import List, Optional, Union
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal

from ..domain.models import (
    ParkingLot, PricingRule, UserPass, ActivePass, CostEstimate, PassType, UserTier,
    InvalidInputError, InvalidPassDefinitionError, NotFoundError
)
from ..domain.strategies import PricingResolver, NO_RULE_DESCRIPTION
from ..infrastructure.messaging import MessageBus, EventType
from ..infrastructure.repositories import UnitOfWork
from .connectivity import ApplicationService, ConnectivityMonitor


# ============================================================================
# PASS MANAGER
# ============================================================================

class PassManager(ApplicationService):
    """
    Sells time-boxed passes and answers which pass covers a session

    A pass is active while its expiry date lies in the future. Passes are
    never deleted; a pass whose defining rule was removed no longer counts.
    """

    def purchase_pass(self, user_id: str, pass_rule_id: str, now: Optional[datetime] = None) -> Optional[UserPass]:
        """
        Purchase a pass for a user

        Raises:
            InvalidInputError: empty user id
            NotFoundError: unknown pass rule
            InvalidPassDefinitionError: rule is not a complete pass definition
        Returns: the new pass, or None while offline
        """
        if not user_id:
            raise InvalidInputError("User id is required to purchase a pass")
        if not self._ensure_online("pass purchase"):
            return None

        now = now or datetime.now()
        with self.uow as uow:
            rule = uow.pricing_rules.get(pass_rule_id)
            if rule is None:
                raise NotFoundError(f"Pass rule {pass_rule_id} not found")
            if not rule.can_back_pass:
                raise InvalidPassDefinitionError(
                    f"Rule {pass_rule_id} is not a pass with a price and a duration"
                )

            user_pass = UserPass(
                user_id=user_id,
                pass_rule_id=rule.rule_id,
                purchase_date=now,
                expiry_date=now + timedelta(minutes=rule.flat_rate_duration_minutes),
                lot_id=rule.lot_id,
            )
            uow.user_passes.add(user_pass)

        self.logger.info(f"User {user_id} purchased pass {user_pass.pass_id} ({rule.description})")
        self._publish(EventType.PASS_PURCHASED, user_pass.pass_id, "UserPass", {
            "user_id": user_id,
            "pass_rule_id": rule.rule_id,
            "expiry_date": user_pass.expiry_date.isoformat(),
            "price": str(rule.flat_rate),
        })
        return user_pass

    def get_active_user_passes(self, user_id: str, now: Optional[datetime] = None) -> List[ActivePass]:
        """Active passes joined with their rule, soonest expiry first"""
        now = now or datetime.now()
        with self.uow as uow:
            active = []
            for user_pass in uow.user_passes.find_by_user(user_id):
                if not user_pass.is_active(now):
                    continue
                rule = uow.pricing_rules.get(user_pass.pass_rule_id)
                if rule is None:
                    self.logger.debug(f"Pass {user_pass.pass_id} references deleted rule {user_pass.pass_rule_id}")
                    continue
                active.append(ActivePass(user_pass=user_pass, rule=rule))

        return sorted(active, key=lambda item: item.expiry_date)

    def find_covering_pass(self, user_id: str, lot_id: str, now: Optional[datetime] = None) -> Optional[ActivePass]:
        """
        The pass that covers parking at a lot right now
        Lot-scoped passes win over global ones; then the later expiry wins.
        """
        candidates = [
            active for active in self.get_active_user_passes(user_id, now)
            if active.user_pass.covers_lot(lot_id)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda item: (item.user_pass.lot_id is not None, item.expiry_date))


# ============================================================================
# PRICING SERVICE
# ============================================================================

class PricingService(ApplicationService):
    """
    Application service for cost estimation and rule administration

    Use cases:
    1. calculate_estimated_cost - pass check, then rule resolution
    2. get_all_pricing_rules / save_pricing_rule / delete_pricing_rule
    3. Parking lot lookups for callers that only know a lot id
    """

    def __init__(
        self,
        uow: UnitOfWork,
        resolver: Optional[PricingResolver] = None,
        pass_manager: Optional[PassManager] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
        message_bus: Optional[MessageBus] = None
    ):
        super().__init__(uow, connectivity, message_bus)
        self.resolver = resolver or PricingResolver()
        self.pass_manager = pass_manager or PassManager(uow, self.connectivity, message_bus)

    def calculate_estimated_cost(
        self,
        lot: Union[ParkingLot, str],
        duration_minutes: int,
        user_id: Optional[str] = None,
        user_tier: UserTier = UserTier.BASIC,
        now: Optional[datetime] = None
    ) -> CostEstimate:
        """
        Estimate the cost of parking at a lot for a duration

        Returns: CostEstimate; any unexpected failure yields cost 0 with the
        "no applicable rule" description
        """
        now = now or datetime.now()
        try:
            if isinstance(lot, str):
                lot = self.get_parking_lot(lot) or ParkingLot(id=lot, name=lot)

            covering_pass = None
            if user_id:
                covering_pass = self.pass_manager.find_covering_pass(user_id, lot.id, now)

            return self.resolver.resolve(
                rules=self.get_all_pricing_rules(),
                lot=lot,
                duration_minutes=duration_minutes,
                user_tier=UserTier(user_tier),
                moment=now,
                covering_pass=covering_pass,
            )
        except Exception as e:
            self.logger.error(f"Error estimating cost: {e}", exc_info=True)
            return CostEstimate(cost=Decimal('0.00'), applied_rule=NO_RULE_DESCRIPTION)

    # ========================================================================
    # RULE ADMINISTRATION
    # ========================================================================

    def get_all_pricing_rules(self) -> List[PricingRule]:
        """All rules and pass definitions ordered by priority"""
        with self.uow as uow:
            return uow.pricing_rules.get_all()

    def get_pricing_rule(self, rule_id: str) -> Optional[PricingRule]:
        with self.uow as uow:
            return uow.pricing_rules.get(rule_id)

    def save_pricing_rule(self, rule: PricingRule) -> Optional[PricingRule]:
        """
        Insert or replace a rule by id
        Pass definitions without a pass type get one inferred from their duration.
        """
        if not self._ensure_online("pricing rule save"):
            return None

        if rule.is_pass and rule.pass_type is None:
            inferred = PassType.infer(rule.flat_rate_duration_minutes)
            if inferred is not None:
                rule = replace(rule, pass_type=inferred)

        with self._lock:
            with self.uow as uow:
                saved = uow.pricing_rules.save(rule)

        self.logger.info(f"Saved pricing rule {saved.rule_id} (priority {saved.priority})")
        self._publish(EventType.PRICING_RULE_SAVED, saved.rule_id, "PricingRule", saved.to_dict())
        return saved

    def delete_pricing_rule(self, rule_id: str) -> bool:
        if not self._ensure_online("pricing rule delete"):
            return False

        with self._lock:
            with self.uow as uow:
                deleted = uow.pricing_rules.delete(rule_id)

        if deleted:
            self.logger.info(f"Deleted pricing rule {rule_id}")
            self._publish(EventType.PRICING_RULE_DELETED, rule_id, "PricingRule", {"rule_id": rule_id})
        return deleted

    # ========================================================================
    # PARKING LOTS
    # ========================================================================

    def get_parking_lot(self, lot_id: str) -> Optional[ParkingLot]:
        with self.uow as uow:
            return uow.parking_lots.get(lot_id)

    def get_all_parking_lots(self) -> List[ParkingLot]:
        with self.uow as uow:
            return uow.parking_lots.get_all()
