# File: carpso/domain/strategies.py
"""
Strategy Pattern Implementation for Carpso Pricing

This module implements the Strategy Pattern to encapsulate the algorithms
used when pricing a parking session. Each strategy can be selected at
runtime based on the pricing rule being evaluated.

Key Strategies:
1. Event Predicates - Decide whether an event-tagged rule is live right now
2. Rate Strategies - Turn a rule and a duration into an amount
3. Pricing Resolver - Filters, orders and evaluates rules for a lot

Benefits:
- New event tags are registered without touching the resolver
- Each strategy is independently testable
- The resolver never raises; it degrades to a zero-cost fallback
"""

from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Iterable
from datetime import datetime
from decimal import Decimal
import logging

from .models import (
    ParkingLot, PricingRule, ActivePass, CostEstimate, UserTier,
    DAY_NAMES, DEFAULT_HOURLY_RATE, MINUTES_PER_HOUR, to_money
)


NO_RULE_DESCRIPTION = "No applicable pricing rule found."
PASS_COVERAGE_PREFIX = "Covered by active pass: "


# ============================================================================
# EVENT PREDICATES
# ============================================================================

class EventPredicate(ABC):
    """
    Abstract base class for event predicates
    Decides whether the event named by a rule is in progress at a lot
    """

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def is_active(self, lot: ParkingLot, moment: datetime) -> bool:
        """
        Check whether the event is live for the lot at the given moment
        Returns: True if rules tagged with this event should apply
        """
        pass


class AlwaysActivePredicate(EventPredicate):
    """Predicate for event tags with no known schedule: the rule always applies"""

    def is_active(self, lot: ParkingLot, moment: datetime) -> bool:
        return True


class ScheduledEventPredicate(EventPredicate):
    """
    Predicate for a recurring event scheduled at specific lots
    - At the configured lots: live on the configured weekdays from a given hour onward
    - At any other lot the schedule does not apply and the rule stays active
    """

    def __init__(self, lot_ids: Iterable[str], days_of_week: Iterable[str], from_hour: int):
        super().__init__()
        self.lot_ids = frozenset(lot_ids)
        self.days_of_week = frozenset(days_of_week)
        self.from_hour = from_hour

    def is_active(self, lot: ParkingLot, moment: datetime) -> bool:
        if lot.id not in self.lot_ids:
            return True
        day = DAY_NAMES[moment.weekday()]
        return day in self.days_of_week and moment.hour >= self.from_hour


class ConcertNightPredicate(ScheduledEventPredicate):
    """Concert nights run at the mall deck on Friday and Saturday evenings"""

    def __init__(self):
        super().__init__(lot_ids=("lot_C",), days_of_week=("Fri", "Sat"), from_hour=18)


class EventConditionRegistry:
    """
    Registry mapping event-condition tags to predicates
    Unknown tags fall back to the default predicate.
    """

    def __init__(self, default: Optional[EventPredicate] = None):
        self._predicates: Dict[str, EventPredicate] = {}
        self._default = default or AlwaysActivePredicate()
        self._logger = logging.getLogger(self.__class__.__name__)

    def register(self, event_condition: str, predicate: EventPredicate) -> None:
        self._predicates[event_condition] = predicate
        self._logger.debug(f"Registered {predicate.__class__.__name__} for '{event_condition}'")

    def unregister(self, event_condition: str) -> bool:
        return self._predicates.pop(event_condition, None) is not None

    def is_active(self, event_condition: str, lot: ParkingLot, moment: datetime) -> bool:
        predicate = self._predicates.get(event_condition, self._default)
        return predicate.is_active(lot, moment)

    @classmethod
    def with_defaults(cls) -> 'EventConditionRegistry':
        registry = cls()
        registry.register("Concert Night", ConcertNightPredicate())
        return registry


# ============================================================================
# RATE STRATEGIES
# ============================================================================

class RateStrategy(ABC):
    """Abstract base class for turning a rate rule into an amount"""

    @abstractmethod
    def calculate(self, rule: PricingRule, duration_minutes: int) -> Decimal:
        pass


class FlatRateStrategy(RateStrategy):
    """Flat and event rates are charged once, whatever the requested duration"""

    def calculate(self, rule: PricingRule, duration_minutes: int) -> Decimal:
        return rule.flat_rate


class HourlyRateStrategy(RateStrategy):
    """Hourly rates are prorated by the minute"""

    def calculate(self, rule: PricingRule, duration_minutes: int) -> Decimal:
        return hourly_amount(rule.base_rate_per_hour, duration_minutes)


def hourly_amount(rate_per_hour: Decimal, duration_minutes: int) -> Decimal:
    return rate_per_hour * Decimal(duration_minutes) / Decimal(MINUTES_PER_HOUR)


def rate_strategy_for(rule: PricingRule) -> Optional[RateStrategy]:
    """Select the rate strategy for a rule; None for discount-only rules"""
    if rule.has_flat_rate:
        return FlatRateStrategy()
    if rule.has_hourly_rate:
        return HourlyRateStrategy()
    return None


# ============================================================================
# PRICING RESOLVER
# ============================================================================

class PricingResolver:
    """
    Resolves the applicable pricing rule for a lot and computes the cost

    Resolution order:
    1. An active covering pass makes the session free
    2. Non-pass rules are filtered by lot, time window, event and user tier
    3. Survivors are ordered by priority (stable) and the first one wins
    4. Discount-only winners borrow the rate of the next survivor
    """

    def __init__(
        self,
        event_registry: Optional[EventConditionRegistry] = None,
        default_hourly_rate: Decimal = DEFAULT_HOURLY_RATE
    ):
        self.event_registry = event_registry or EventConditionRegistry.with_defaults()
        self.default_hourly_rate = Decimal(default_hourly_rate)
        self.logger = logging.getLogger(self.__class__.__name__)

    def applicable_rules(
        self,
        rules: Iterable[PricingRule],
        lot: ParkingLot,
        user_tier: UserTier,
        moment: datetime
    ) -> List[PricingRule]:
        """Filter and order the rules that apply right now"""
        survivors = [rule for rule in rules if self._is_applicable(rule, lot, user_tier, moment)]
        return sorted(survivors, key=lambda rule: rule.priority)

    def _is_applicable(
        self,
        rule: PricingRule,
        lot: ParkingLot,
        user_tier: UserTier,
        moment: datetime
    ) -> bool:
        if rule.is_pass:
            return False
        if not rule.applies_to_lot(lot.id):
            return False
        if rule.time_condition and not rule.time_condition.matches(moment):
            return False
        if rule.event_condition and not self.event_registry.is_active(rule.event_condition, lot, moment):
            return False
        return rule.applies_to_tier(user_tier)

    def resolve(
        self,
        rules: Iterable[PricingRule],
        lot: ParkingLot,
        duration_minutes: int,
        user_tier: UserTier = UserTier.BASIC,
        moment: Optional[datetime] = None,
        covering_pass: Optional[ActivePass] = None
    ) -> CostEstimate:
        """
        Compute the estimated cost for a lot and duration
        Returns: CostEstimate; never raises
        """
        moment = moment or datetime.now()

        if covering_pass is not None:
            self.logger.debug(
                f"Pass {covering_pass.user_pass.pass_id} covers lot {lot.id}"
            )
            return CostEstimate(
                cost=Decimal('0.00'),
                applied_rule=f"{PASS_COVERAGE_PREFIX}{covering_pass.rule.description}",
                is_covered_by_pass=True,
            )

        try:
            return self._evaluate(list(rules), lot, duration_minutes, user_tier, moment)
        except Exception as e:
            self.logger.error(f"Error pricing lot {lot.id}: {e}", exc_info=True)
            return CostEstimate(cost=Decimal('0.00'), applied_rule=NO_RULE_DESCRIPTION)

    def _evaluate(
        self,
        rules: List[PricingRule],
        lot: ParkingLot,
        duration_minutes: int,
        user_tier: UserTier,
        moment: datetime
    ) -> CostEstimate:
        applicable = self.applicable_rules(rules, lot, user_tier, moment)
        if not applicable:
            self.logger.info(f"No pricing rule applies to lot {lot.id}")
            return CostEstimate(cost=Decimal('0.00'), applied_rule=NO_RULE_DESCRIPTION)

        best_rule = applicable[0]
        applied_description = best_rule.description
        strategy = rate_strategy_for(best_rule)

        if strategy is not None:
            cost = strategy.calculate(best_rule, duration_minutes)
        else:
            base_rule = next((rule for rule in applicable[1:] if rule.defines_rate), None)
            if base_rule is not None:
                cost = rate_strategy_for(base_rule).calculate(base_rule, duration_minutes)
                applied_description = f"{base_rule.description} with {best_rule.description}"
            else:
                cost = hourly_amount(self.default_hourly_rate, duration_minutes)
                applied_description = f"Default Rate (applied {best_rule.description})"

        # Discounts only ever reduce hourly rates
        if best_rule.discount_percentage is not None and best_rule.has_hourly_rate:
            cost = cost * (Decimal('1') - best_rule.discount_percentage / Decimal('100'))

        cost = max(to_money(cost), Decimal('0.00'))
        self.logger.debug(f"Rule {best_rule.rule_id} priced lot {lot.id} at {cost}")
        return CostEstimate(cost=cost, applied_rule=applied_description)
