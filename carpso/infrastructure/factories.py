# File: carpso/infrastructure/factories.py
"""
Factory Pattern Implementation for the Carpso Engine

This module centralizes object creation:
1. Seed Data Factories - Default pricing rules, pass definitions and lots
2. Service Factory - Wires units of work, caches, messaging and services

Key Benefits:
- Decouples object creation from usage
- One place to switch between in-memory and SQLAlchemy storage
- Facilitates testing with in-memory wiring
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional
import logging

from ..domain.models import ParkingLot, PricingRule, TimeCondition, UserTier, PassType
from ..domain.strategies import PricingResolver, EventConditionRegistry
from ..application.connectivity import ConnectivityMonitor
from ..application.pricing_service import PassManager, PricingService
from ..application.record_service import ParkingRecordLedger
from ..application.queue_service import SpotQueueManager
from ..application.reservation_service import ReservationService
from ..application.commands import CarpsoCommandHandler
from .messaging import MessageBus, MessageBrokerFactory, QueueNotificationHandler, EventType
from .repositories import RepositoryFactory, UnitOfWork

WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri")
WEEKEND = ("Sat", "Sun")


# ============================================================================
# SEED DATA FACTORIES
# ============================================================================

class PricingRuleFactory:
    """Factory for the default rule set and pass catalogue"""

    @staticmethod
    def create_default_rules() -> List[PricingRule]:
        """Global rules (low precedence) followed by lot-specific rules"""
        return [
            PricingRule(
                rule_id="global_base",
                description="Standard Rate",
                base_rate_per_hour=Decimal('2.50'),
                priority=100,
            ),
            PricingRule(
                rule_id="global_weekend_discount",
                description="Weekend Discount (10%)",
                discount_percentage=Decimal('10'),
                time_condition=TimeCondition(days_of_week=WEEKEND),
                priority=90,
            ),
            PricingRule(
                rule_id="global_premium_discount",
                description="Premium User Discount (5%)",
                discount_percentage=Decimal('5'),
                user_tier_condition=(UserTier.PREMIUM,),
                priority=80,
            ),
            PricingRule(
                rule_id="lot_A_weekday_peak",
                lot_id="lot_A",
                description="Downtown Weekday Peak (8am-6pm)",
                base_rate_per_hour=Decimal('3.00'),
                time_condition=TimeCondition(days_of_week=WEEKDAYS, start_time="08:00", end_time="18:00"),
                priority=10,
            ),
            PricingRule(
                rule_id="lot_B_airport_flat",
                lot_id="lot_B",
                description="Airport Daily Flat Rate",
                flat_rate=Decimal('15.00'),
                flat_rate_duration_minutes=24 * 60,
                priority=5,
            ),
            PricingRule(
                rule_id="lot_C_event",
                lot_id="lot_C",
                description="Mall Event Parking",
                flat_rate=Decimal('10.00'),
                event_condition="Concert Night",
                priority=1,
            ),
        ]

    @staticmethod
    def create_default_passes() -> List[PricingRule]:
        """Purchasable pass definitions"""
        return [
            PricingRule(
                rule_id="pass_daily",
                description="Day Pass (all lots)",
                flat_rate=Decimal('12.00'),
                flat_rate_duration_minutes=24 * 60,
                is_pass=True,
                pass_type=PassType.DAILY,
                priority=200,
            ),
            PricingRule(
                rule_id="pass_monthly_lot_A",
                lot_id="lot_A",
                description="Downtown Garage Monthly Pass",
                flat_rate=Decimal('120.00'),
                flat_rate_duration_minutes=30 * 24 * 60,
                is_pass=True,
                pass_type=PassType.MONTHLY,
                priority=200,
            ),
            PricingRule(
                rule_id="pass_yearly",
                description="Annual Pass (all lots)",
                flat_rate=Decimal('900.00'),
                flat_rate_duration_minutes=365 * 24 * 60,
                is_pass=True,
                pass_type=PassType.YEARLY,
                priority=200,
            ),
        ]


class ParkingLotFactory:
    """Factory for the default parking lots"""

    @staticmethod
    def create_default_lots() -> List[ParkingLot]:
        return [
            ParkingLot(id="lot_A", name="Downtown Garage", address="123 Main St, Anytown",
                       capacity=50, latitude=34.0522, longitude=-118.2437),
            ParkingLot(id="lot_B", name="Airport Lot B", address="456 Airport Rd, Anytown",
                       capacity=150, latitude=34.0550, longitude=-118.2500),
            ParkingLot(id="lot_C", name="Mall Parking Deck", address="789 Retail Ave, Anytown",
                       capacity=200, latitude=34.0500, longitude=-118.2400),
            ParkingLot(id="lot_D", name="University Campus Lot", address="1 College Way, Anytown",
                       capacity=80, latitude=34.0580, longitude=-118.2450),
        ]


def seed_defaults(uow: UnitOfWork) -> None:
    """Load the default lots, rules and passes into an empty store"""
    with uow:
        if uow.pricing_rules.count() == 0:
            for rule in PricingRuleFactory.create_default_rules() + PricingRuleFactory.create_default_passes():
                uow.pricing_rules.save(rule)
        if uow.parking_lots.count() == 0:
            for lot in ParkingLotFactory.create_default_lots():
                uow.parking_lots.add(lot)


# ============================================================================
# SERVICE FACTORY
# ============================================================================

@dataclass
class CarpsoServices:
    """Fully wired application services sharing one store and one bus"""
    uow: UnitOfWork
    connectivity: ConnectivityMonitor
    message_bus: Optional[MessageBus]
    pricing: PricingService
    ledger: ParkingRecordLedger
    queues: SpotQueueManager
    reservations: ReservationService
    commands: CarpsoCommandHandler
    notifications: Optional[QueueNotificationHandler] = None

    def close(self) -> None:
        if self.message_bus is not None:
            self.message_bus.close()


class ServiceFactory:
    """Factory for creating application service graphs"""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    def create_services(
        self,
        uow: UnitOfWork,
        message_bus: Optional[MessageBus] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
        event_registry: Optional[EventConditionRegistry] = None,
        reservation_timeout_seconds: Optional[int] = None
    ) -> CarpsoServices:
        """Wire every service around the given unit of work"""
        connectivity = connectivity or ConnectivityMonitor()
        resolver = PricingResolver(event_registry=event_registry or EventConditionRegistry.with_defaults())

        notifications = None
        if message_bus is not None:
            notifications = QueueNotificationHandler(message_bus)
            message_bus.subscribe_to_events(EventType.QUEUE_HEAD_NOTIFIED, notifications)

        pass_manager = PassManager(uow, connectivity, message_bus)
        pricing = PricingService(uow, resolver, pass_manager, connectivity, message_bus)
        ledger = ParkingRecordLedger(uow, connectivity, message_bus)
        queues = SpotQueueManager(uow, connectivity, message_bus)

        reservation_kwargs = {}
        if reservation_timeout_seconds is not None:
            reservation_kwargs["timeout_seconds"] = reservation_timeout_seconds
        reservations = ReservationService(pricing, ledger, queues, message_bus, **reservation_kwargs)

        commands = CarpsoCommandHandler(pricing, ledger, queues, reservations)
        self.logger.info(f"Services wired on {uow.__class__.__name__}")

        return CarpsoServices(
            uow=uow,
            connectivity=connectivity,
            message_bus=message_bus,
            pricing=pricing,
            ledger=ledger,
            queues=queues,
            reservations=reservations,
            commands=commands,
            notifications=notifications,
        )

    def create_in_memory_services(self, seed: bool = True, with_message_bus: bool = True) -> CarpsoServices:
        """In-memory store and in-memory broker, for tests and demos"""
        uow = RepositoryFactory.create_in_memory_uow()
        if seed:
            seed_defaults(uow)

        message_bus = MessageBrokerFactory.create_message_bus("memory") if with_message_bus else None
        if message_bus is not None:
            message_bus.retry_delay = 0
        return self.create_services(uow, message_bus)

    def create_from_config(self, config: Any) -> CarpsoServices:
        """Wire services from a CarpsoConfig"""
        cache_client = None
        if config.redis_cache_url:
            cache_client = RepositoryFactory.create_redis_client(config.redis_cache_url)

        if config.database_url:
            uow = RepositoryFactory.create_sqlalchemy_uow(
                config.database_url,
                cache_client=cache_client,
                cache_ttl=config.cache_ttl_seconds,
            )
        else:
            uow = RepositoryFactory.create_in_memory_uow(cache_client=cache_client)

        if config.seed_defaults:
            seed_defaults(uow)

        message_bus = None
        if config.broker_type:
            message_bus = MessageBrokerFactory.create_message_bus(
                broker_type=config.broker_type,
                mongo_url=config.mongo_url,
                redis_url=config.redis_url,
                amqp_url=config.amqp_url,
            )
            message_bus.max_retries = config.publish_max_retries
            message_bus.retry_delay = config.publish_retry_delay

        self.logger.info(
            f"Creating services (database={'sqlalchemy' if config.database_url else 'memory'}, "
            f"broker={config.broker_type or 'none'})"
        )
        return self.create_services(
            uow,
            message_bus,
            reservation_timeout_seconds=config.reservation_timeout_seconds,
        )
