# File: carpso/infrastructure/repositories.py
"""
Repository Pattern Implementation for the Carpso Engine

This module implements the Repository Pattern for data persistence.
Repositories provide a collection-like interface for accessing domain
aggregates while abstracting the underlying data storage implementation.

Key Benefits:
- Decouples the pricing and queue services from storage
- Provides a consistent interface for data access
- Enables easy swapping of storage implementations
- Supports unit testing with in-memory repositories

Repository Types:
1. PricingRuleRepository - Rules and pass definitions, priority ordered
2. UserPassRepository - Purchased passes (never deleted)
3. ParkingRecordRepository - The parking session ledger
4. SpotQueueRepository - One FIFO wait-list per spot
5. ParkingLotRepository - Reference data for lots

Storage Implementations:
- InMemory* - For testing and development
- SQLAlchemy* - For relational databases
- CachingPricingRuleRepository - Redis cache in front of any rule repository
"""

from abc import ABC, abstractmethod
from typing import Type, TypeVar, Generic, Optional, List, Dict, Any, Callable
from datetime import datetime
import copy
import json
import logging
import threading

from sqlalchemy import (
    create_engine, Column, Integer, String, Boolean, Float,
    DateTime, Numeric, JSON, UniqueConstraint, func
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from sqlalchemy.pool import StaticPool
import redis

from ..domain.models import (
    PricingRule, UserPass, ParkingLot, QueueEntry, TimeCondition, RecordStatus
)
from ..domain.aggregates import ParkingRecord, SpotQueue

T = TypeVar('T')


# ============================================================================
# REPOSITORY INTERFACES
# ============================================================================

class Repository(ABC, Generic[T]):
    """Base repository interface"""

    @abstractmethod
    def add(self, entity: T) -> T:
        """Add an entity to the repository"""
        pass

    @abstractmethod
    def get(self, id: str) -> Optional[T]:
        """Get an entity by ID"""
        pass

    @abstractmethod
    def get_all(self) -> List[T]:
        """Get all entities"""
        pass

    @abstractmethod
    def update(self, entity: T) -> T:
        """Update an existing entity"""
        pass

    @abstractmethod
    def delete(self, id: str) -> bool:
        """Delete an entity by ID"""
        pass

    def exists(self, id: str) -> bool:
        return self.get(id) is not None

    def count(self) -> int:
        return len(self.get_all())


class PricingRuleRepository(Repository[PricingRule], ABC):
    """Rules are returned ordered by priority; ties keep insertion order"""

    @abstractmethod
    def save(self, rule: PricingRule) -> PricingRule:
        """Insert, or replace in place when the rule id already exists"""
        pass


class UserPassRepository(Repository[UserPass], ABC):

    @abstractmethod
    def find_by_user(self, user_id: str) -> List[UserPass]:
        pass


class ParkingRecordRepository(Repository[ParkingRecord], ABC):

    @abstractmethod
    def find(
        self,
        user_id: Optional[str] = None,
        lot_id: Optional[str] = None,
        start_from: Optional[datetime] = None,
        start_until: Optional[datetime] = None
    ) -> List[ParkingRecord]:
        """Find records whose start time falls in [start_from, start_until]"""
        pass

    @abstractmethod
    def find_active(self, user_id: str, spot_id: str) -> Optional[ParkingRecord]:
        pass


class ParkingLotRepository(Repository[ParkingLot], ABC):
    pass


class SpotQueueRepository(ABC):
    """Spot queues are loaded and saved whole"""

    @abstractmethod
    def get(self, spot_id: str) -> SpotQueue:
        """Get the queue for a spot; an empty queue when none exists"""
        pass

    @abstractmethod
    def save(self, queue: SpotQueue) -> None:
        pass

    @abstractmethod
    def spot_ids(self) -> List[str]:
        """Spots that currently have at least one waiting user"""
        pass


# ============================================================================
# UNIT OF WORK PATTERN
# ============================================================================

class UnitOfWork(ABC):
    """Unit of Work pattern for transaction management"""

    @abstractmethod
    def __enter__(self):
        pass

    @abstractmethod
    def __exit__(self, exc_type, exc_val, exc_tb):
        pass

    @abstractmethod
    def commit(self):
        """Commit the transaction"""
        pass

    @abstractmethod
    def rollback(self):
        """Rollback the transaction"""
        pass

    @property
    @abstractmethod
    def pricing_rules(self) -> PricingRuleRepository:
        pass

    @property
    @abstractmethod
    def user_passes(self) -> UserPassRepository:
        pass

    @property
    @abstractmethod
    def parking_records(self) -> ParkingRecordRepository:
        pass

    @property
    @abstractmethod
    def spot_queues(self) -> SpotQueueRepository:
        pass

    @property
    @abstractmethod
    def parking_lots(self) -> ParkingLotRepository:
        pass


# ============================================================================
# IN-MEMORY REPOSITORIES (For Testing)
# ============================================================================

class InMemoryRepository(Repository[T]):
    """
    In-memory repository keyed by one attribute of the entity
    Stores and hands out copies, like a database would.
    """

    id_attribute = 'id'

    def __init__(self):
        self._storage: Dict[str, T] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    def _key(self, entity: T) -> str:
        return getattr(entity, self.id_attribute)

    @staticmethod
    def _copy(entity: Optional[T]) -> Optional[T]:
        return copy.deepcopy(entity)

    def _copies(self, entities) -> List[T]:
        return [self._copy(entity) for entity in entities]

    def add(self, entity: T) -> T:
        entity_id = self._key(entity)
        if entity_id in self._storage:
            raise KeyError(f"Entity {entity_id} already exists")

        self._storage[entity_id] = self._copy(entity)
        self._logger.debug(f"Added entity {entity_id}")
        return entity

    def get(self, id: str) -> Optional[T]:
        return self._copy(self._storage.get(id))

    def get_all(self) -> List[T]:
        return self._copies(self._storage.values())

    def update(self, entity: T) -> T:
        entity_id = self._key(entity)
        if entity_id not in self._storage:
            raise KeyError(f"Entity {entity_id} not found")

        self._storage[entity_id] = self._copy(entity)
        self._logger.debug(f"Updated entity {entity_id}")
        return entity

    def delete(self, id: str) -> bool:
        if id in self._storage:
            del self._storage[id]
            self._logger.debug(f"Deleted entity {id}")
            return True
        return False

    def clear(self):
        """Clear all data (for testing)"""
        self._storage.clear()


class InMemoryPricingRuleRepository(InMemoryRepository[PricingRule], PricingRuleRepository):
    id_attribute = 'rule_id'

    def get_all(self) -> List[PricingRule]:
        # dict order is insertion order and sorted() is stable
        return self._copies(sorted(self._storage.values(), key=lambda rule: rule.priority))

    def save(self, rule: PricingRule) -> PricingRule:
        self._storage[rule.rule_id] = self._copy(rule)
        self._logger.debug(f"Saved pricing rule {rule.rule_id}")
        return rule


class InMemoryUserPassRepository(InMemoryRepository[UserPass], UserPassRepository):
    id_attribute = 'pass_id'

    def find_by_user(self, user_id: str) -> List[UserPass]:
        return self._copies(p for p in self._storage.values() if p.user_id == user_id)


class InMemoryParkingRecordRepository(InMemoryRepository[ParkingRecord], ParkingRecordRepository):
    id_attribute = 'record_id'

    def find(
        self,
        user_id: Optional[str] = None,
        lot_id: Optional[str] = None,
        start_from: Optional[datetime] = None,
        start_until: Optional[datetime] = None
    ) -> List[ParkingRecord]:
        records = list(self._storage.values())
        if user_id:
            records = [r for r in records if r.user_id == user_id]
        if lot_id:
            records = [r for r in records if r.lot_id == lot_id]
        if start_from:
            records = [r for r in records if r.start_time >= start_from]
        if start_until:
            records = [r for r in records if r.start_time <= start_until]
        return self._copies(records)

    def find_active(self, user_id: str, spot_id: str) -> Optional[ParkingRecord]:
        for record in self._storage.values():
            if record.user_id == user_id and record.spot_id == spot_id and record.is_active:
                return self._copy(record)
        return None


class InMemoryParkingLotRepository(InMemoryRepository[ParkingLot], ParkingLotRepository):
    pass


class InMemorySpotQueueRepository(SpotQueueRepository):

    def __init__(self):
        self._queues: Dict[str, List[QueueEntry]] = {}

    def get(self, spot_id: str) -> SpotQueue:
        return SpotQueue(spot_id, copy.deepcopy(self._queues.get(spot_id, [])))

    def save(self, queue: SpotQueue) -> None:
        if len(queue):
            self._queues[queue.spot_id] = copy.deepcopy(queue.entries)
        else:
            self._queues.pop(queue.spot_id, None)

    def spot_ids(self) -> List[str]:
        return list(self._queues.keys())


class InMemoryUnitOfWork(UnitOfWork):
    """
    Unit of Work over in-memory repositories
    Changes are visible immediately; rollback only logs.
    """

    def __init__(self, cache_client: Optional[Any] = None, cache_ttl: int = 300):
        self._pricing_rules: PricingRuleRepository = InMemoryPricingRuleRepository()
        if cache_client is not None:
            self._pricing_rules = CachingPricingRuleRepository(self._pricing_rules, cache_client, cache_ttl)
        self._user_passes = InMemoryUserPassRepository()
        self._parking_records = InMemoryParkingRecordRepository()
        self._spot_queues = InMemorySpotQueueRepository()
        self._parking_lots = InMemoryParkingLotRepository()
        self.committed = False
        self._logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self):
        self.committed = False
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self._logger.error(f"Exception in unit of work: {exc_val}")
            self.rollback()
        else:
            self.commit()

    def commit(self):
        self.committed = True

    def rollback(self):
        self._logger.debug("Rollback requested on in-memory unit of work")

    @property
    def pricing_rules(self) -> PricingRuleRepository:
        return self._pricing_rules

    @property
    def user_passes(self) -> InMemoryUserPassRepository:
        return self._user_passes

    @property
    def parking_records(self) -> InMemoryParkingRecordRepository:
        return self._parking_records

    @property
    def spot_queues(self) -> InMemorySpotQueueRepository:
        return self._spot_queues

    @property
    def parking_lots(self) -> InMemoryParkingLotRepository:
        return self._parking_lots


# ============================================================================
# SQLALCHEMY ORM MODELS
# ============================================================================

Base = declarative_base()


class PricingRuleModel(Base):
    """SQLAlchemy model for PricingRule"""
    __tablename__ = 'pricing_rules'

    rule_id = Column(String(64), primary_key=True)
    lot_id = Column(String(64), index=True)
    description = Column(String(200), nullable=False)
    base_rate_per_hour = Column(Numeric(12, 4))
    flat_rate = Column(Numeric(12, 4))
    flat_rate_duration_minutes = Column(Integer)
    discount_percentage = Column(Numeric(7, 4))
    time_condition = Column(JSON)
    event_condition = Column(String(100))
    user_tier_condition = Column(JSON)
    is_pass = Column(Boolean, default=False, nullable=False)
    pass_type = Column(String(20))
    priority = Column(Integer, nullable=False, index=True)

    # Insertion order, used as the priority tie-break
    position = Column(Integer, nullable=False)


class UserPassModel(Base):
    """SQLAlchemy model for UserPass"""
    __tablename__ = 'user_passes'

    pass_id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    pass_rule_id = Column(String(64), nullable=False)
    lot_id = Column(String(64))
    purchase_date = Column(DateTime, nullable=False)
    expiry_date = Column(DateTime, nullable=False, index=True)


class ParkingRecordModel(Base):
    """SQLAlchemy model for ParkingRecord"""
    __tablename__ = 'parking_records'

    record_id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    lot_id = Column(String(64), nullable=False, index=True)
    spot_id = Column(String(64), nullable=False)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime)
    duration_minutes = Column(Integer)
    cost = Column(Numeric(10, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default=RecordStatus.ACTIVE.value)
    payment_method = Column(String(50))
    applied_pricing_rule = Column(String(300))


class QueueEntryModel(Base):
    """SQLAlchemy model for QueueEntry"""
    __tablename__ = 'queue_entries'

    id = Column(Integer, primary_key=True, autoincrement=True)
    spot_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    position = Column(Integer, nullable=False)
    queue_timestamp = Column(DateTime, nullable=False)
    notified = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint('spot_id', 'user_id', name='uq_queue_spot_user'),
    )


class ParkingLotModel(Base):
    """SQLAlchemy model for ParkingLot"""
    __tablename__ = 'parking_lots'

    id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=False)
    address = Column(String(200))
    capacity = Column(Integer, default=0)
    latitude = Column(Float)
    longitude = Column(Float)


# ============================================================================
# DOMAIN <-> ORM MAPPERS
# ============================================================================

class Mapper:
    """Maps between domain models and ORM models"""

    @staticmethod
    def pricing_rule_to_orm(rule: PricingRule, position: int = 0) -> PricingRuleModel:
        data = rule.to_dict()
        return PricingRuleModel(
            rule_id=rule.rule_id,
            lot_id=rule.lot_id,
            description=rule.description,
            base_rate_per_hour=rule.base_rate_per_hour,
            flat_rate=rule.flat_rate,
            flat_rate_duration_minutes=rule.flat_rate_duration_minutes,
            discount_percentage=rule.discount_percentage,
            time_condition=data["time_condition"],
            event_condition=rule.event_condition,
            user_tier_condition=data["user_tier_condition"],
            is_pass=rule.is_pass,
            pass_type=data["pass_type"],
            priority=rule.priority,
            position=position,
        )

    @staticmethod
    def pricing_rule_to_domain(model: PricingRuleModel) -> PricingRule:
        tiers = model.user_tier_condition
        return PricingRule(
            rule_id=model.rule_id,
            lot_id=model.lot_id,
            description=model.description,
            base_rate_per_hour=model.base_rate_per_hour,
            flat_rate=model.flat_rate,
            flat_rate_duration_minutes=model.flat_rate_duration_minutes,
            discount_percentage=model.discount_percentage,
            time_condition=TimeCondition.from_dict(model.time_condition),
            event_condition=model.event_condition,
            user_tier_condition=tuple(tiers) if tiers else None,
            is_pass=bool(model.is_pass),
            pass_type=model.pass_type,
            priority=model.priority,
        )

    @staticmethod
    def user_pass_to_orm(user_pass: UserPass) -> UserPassModel:
        return UserPassModel(
            pass_id=user_pass.pass_id,
            user_id=user_pass.user_id,
            pass_rule_id=user_pass.pass_rule_id,
            lot_id=user_pass.lot_id,
            purchase_date=user_pass.purchase_date,
            expiry_date=user_pass.expiry_date,
        )

    @staticmethod
    def user_pass_to_domain(model: UserPassModel) -> UserPass:
        return UserPass(
            pass_id=model.pass_id,
            user_id=model.user_id,
            pass_rule_id=model.pass_rule_id,
            lot_id=model.lot_id,
            purchase_date=model.purchase_date,
            expiry_date=model.expiry_date,
        )

    @staticmethod
    def parking_record_to_orm(record: ParkingRecord) -> ParkingRecordModel:
        return ParkingRecordModel(
            record_id=record.record_id,
            user_id=record.user_id,
            lot_id=record.lot_id,
            spot_id=record.spot_id,
            start_time=record.start_time,
            end_time=record.end_time,
            duration_minutes=record.duration_minutes,
            cost=record.cost,
            status=record.status.value,
            payment_method=record.payment_method,
            applied_pricing_rule=record.applied_pricing_rule,
        )

    @staticmethod
    def parking_record_to_domain(model: ParkingRecordModel) -> ParkingRecord:
        return ParkingRecord(
            record_id=model.record_id,
            user_id=model.user_id,
            lot_id=model.lot_id,
            spot_id=model.spot_id,
            start_time=model.start_time,
            end_time=model.end_time,
            duration_minutes=model.duration_minutes,
            cost=model.cost,
            status=RecordStatus(model.status),
            payment_method=model.payment_method,
            applied_pricing_rule=model.applied_pricing_rule,
        )

    @staticmethod
    def queue_entry_to_orm(entry: QueueEntry, position: int) -> QueueEntryModel:
        return QueueEntryModel(
            spot_id=entry.spot_id,
            user_id=entry.user_id,
            position=position,
            queue_timestamp=entry.queue_timestamp,
            notified=entry.notified,
        )

    @staticmethod
    def queue_entry_to_domain(model: QueueEntryModel) -> QueueEntry:
        return QueueEntry(
            user_id=model.user_id,
            spot_id=model.spot_id,
            queue_timestamp=model.queue_timestamp,
            notified=bool(model.notified),
        )

    @staticmethod
    def parking_lot_to_orm(lot: ParkingLot) -> ParkingLotModel:
        return ParkingLotModel(
            id=lot.id,
            name=lot.name,
            address=lot.address,
            capacity=lot.capacity,
            latitude=lot.latitude,
            longitude=lot.longitude,
        )

    @staticmethod
    def parking_lot_to_domain(model: ParkingLotModel) -> ParkingLot:
        return ParkingLot(
            id=model.id,
            name=model.name,
            address=model.address or "",
            capacity=model.capacity or 0,
            latitude=model.latitude,
            longitude=model.longitude,
        )


# ============================================================================
# SQLALCHEMY REPOSITORIES
# ============================================================================

class SQLAlchemyRepository(Repository[T], ABC):
    """Base SQLAlchemy repository"""

    def __init__(self, session: Session):
        self.session = session
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    @abstractmethod
    def model_class(self) -> Type[Base]:
        """Return SQLAlchemy model class"""
        pass

    @abstractmethod
    def to_domain(self, model: Base) -> T:
        """Convert ORM model to domain model"""
        pass

    @abstractmethod
    def to_orm(self, entity: T) -> Base:
        """Convert domain model to ORM model"""
        pass

    def add(self, entity: T) -> T:
        try:
            model = self.to_orm(entity)
            self.session.add(model)
            self.session.flush()
            self._logger.debug(f"Added {self.model_class.__name__}")
            return entity
        except IntegrityError as e:
            self.session.rollback()
            self._logger.error(f"Integrity error adding entity: {e}")
            raise
        except SQLAlchemyError as e:
            self.session.rollback()
            self._logger.error(f"Database error adding entity: {e}")
            raise

    def get(self, id: str) -> Optional[T]:
        try:
            model = self.session.get(self.model_class, id)
            if model:
                return self.to_domain(model)
            return None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error getting entity {id}: {e}")
            raise

    def get_all(self) -> List[T]:
        try:
            models = self.session.query(self.model_class).all()
            return [self.to_domain(model) for model in models]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error getting all entities: {e}")
            raise

    def update(self, entity: T) -> T:
        try:
            self.session.merge(self.to_orm(entity))
            self.session.flush()
            self._logger.debug(f"Updated {self.model_class.__name__}")
            return entity
        except SQLAlchemyError as e:
            self.session.rollback()
            self._logger.error(f"Database error updating entity: {e}")
            raise

    def delete(self, id: str) -> bool:
        try:
            model = self.session.get(self.model_class, id)
            if model:
                self.session.delete(model)
                self.session.flush()
                self._logger.debug(f"Deleted entity: {id}")
                return True
            return False
        except SQLAlchemyError as e:
            self.session.rollback()
            self._logger.error(f"Database error deleting entity {id}: {e}")
            raise

    def count(self) -> int:
        try:
            return self.session.query(self.model_class).count()
        except SQLAlchemyError as e:
            self._logger.error(f"Database error counting entities: {e}")
            raise


class SQLAlchemyPricingRuleRepository(SQLAlchemyRepository[PricingRule], PricingRuleRepository):

    @property
    def model_class(self) -> Type[Base]:
        return PricingRuleModel

    def to_domain(self, model: PricingRuleModel) -> PricingRule:
        return Mapper.pricing_rule_to_domain(model)

    def to_orm(self, entity: PricingRule) -> PricingRuleModel:
        return Mapper.pricing_rule_to_orm(entity, self._next_position())

    def _next_position(self) -> int:
        current = self.session.query(func.max(PricingRuleModel.position)).scalar()
        return (current or 0) + 1

    def get_all(self) -> List[PricingRule]:
        try:
            models = (
                self.session.query(PricingRuleModel)
                .order_by(PricingRuleModel.priority, PricingRuleModel.position)
                .all()
            )
            return [self.to_domain(model) for model in models]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error listing pricing rules: {e}")
            raise

    def update(self, entity: PricingRule) -> PricingRule:
        return self.save(entity)

    def save(self, rule: PricingRule) -> PricingRule:
        try:
            existing = self.session.get(PricingRuleModel, rule.rule_id)
            position = existing.position if existing else self._next_position()
            self.session.merge(Mapper.pricing_rule_to_orm(rule, position))
            self.session.flush()
            self._logger.debug(f"Saved pricing rule {rule.rule_id}")
            return rule
        except SQLAlchemyError as e:
            self.session.rollback()
            self._logger.error(f"Database error saving pricing rule {rule.rule_id}: {e}")
            raise


class SQLAlchemyUserPassRepository(SQLAlchemyRepository[UserPass], UserPassRepository):

    @property
    def model_class(self) -> Type[Base]:
        return UserPassModel

    def to_domain(self, model: UserPassModel) -> UserPass:
        return Mapper.user_pass_to_domain(model)

    def to_orm(self, entity: UserPass) -> UserPassModel:
        return Mapper.user_pass_to_orm(entity)

    def find_by_user(self, user_id: str) -> List[UserPass]:
        try:
            models = self.session.query(UserPassModel).filter(UserPassModel.user_id == user_id).all()
            return [self.to_domain(model) for model in models]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding passes for {user_id}: {e}")
            raise


class SQLAlchemyParkingRecordRepository(SQLAlchemyRepository[ParkingRecord], ParkingRecordRepository):

    @property
    def model_class(self) -> Type[Base]:
        return ParkingRecordModel

    def to_domain(self, model: ParkingRecordModel) -> ParkingRecord:
        return Mapper.parking_record_to_domain(model)

    def to_orm(self, entity: ParkingRecord) -> ParkingRecordModel:
        return Mapper.parking_record_to_orm(entity)

    def find(
        self,
        user_id: Optional[str] = None,
        lot_id: Optional[str] = None,
        start_from: Optional[datetime] = None,
        start_until: Optional[datetime] = None
    ) -> List[ParkingRecord]:
        try:
            query = self.session.query(ParkingRecordModel)
            if user_id:
                query = query.filter(ParkingRecordModel.user_id == user_id)
            if lot_id:
                query = query.filter(ParkingRecordModel.lot_id == lot_id)
            if start_from:
                query = query.filter(ParkingRecordModel.start_time >= start_from)
            if start_until:
                query = query.filter(ParkingRecordModel.start_time <= start_until)
            return [self.to_domain(model) for model in query.all()]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding parking records: {e}")
            raise

    def find_active(self, user_id: str, spot_id: str) -> Optional[ParkingRecord]:
        try:
            model = self.session.query(ParkingRecordModel).filter(
                ParkingRecordModel.user_id == user_id,
                ParkingRecordModel.spot_id == spot_id,
                ParkingRecordModel.status == RecordStatus.ACTIVE.value
            ).first()
            return self.to_domain(model) if model else None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding active record: {e}")
            raise


class SQLAlchemyParkingLotRepository(SQLAlchemyRepository[ParkingLot], ParkingLotRepository):

    @property
    def model_class(self) -> Type[Base]:
        return ParkingLotModel

    def to_domain(self, model: ParkingLotModel) -> ParkingLot:
        return Mapper.parking_lot_to_domain(model)

    def to_orm(self, entity: ParkingLot) -> ParkingLotModel:
        return Mapper.parking_lot_to_orm(entity)


class SQLAlchemySpotQueueRepository(SpotQueueRepository):
    """Stores each queue as rows ordered by an explicit position column"""

    def __init__(self, session: Session):
        self.session = session
        self._logger = logging.getLogger(self.__class__.__name__)

    def get(self, spot_id: str) -> SpotQueue:
        try:
            models = (
                self.session.query(QueueEntryModel)
                .filter(QueueEntryModel.spot_id == spot_id)
                .order_by(QueueEntryModel.position)
                .all()
            )
            return SpotQueue(spot_id, [Mapper.queue_entry_to_domain(model) for model in models])
        except SQLAlchemyError as e:
            self._logger.error(f"Database error loading queue for {spot_id}: {e}")
            raise

    def save(self, queue: SpotQueue) -> None:
        try:
            self.session.query(QueueEntryModel).filter(
                QueueEntryModel.spot_id == queue.spot_id
            ).delete(synchronize_session=False)
            for position, entry in enumerate(queue.entries, start=1):
                self.session.add(Mapper.queue_entry_to_orm(entry, position))
            self.session.flush()
        except SQLAlchemyError as e:
            self.session.rollback()
            self._logger.error(f"Database error saving queue for {queue.spot_id}: {e}")
            raise

    def spot_ids(self) -> List[str]:
        try:
            rows = self.session.query(QueueEntryModel.spot_id).distinct().all()
            return [row[0] for row in rows]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error listing queued spots: {e}")
            raise


# ============================================================================
# SQLALCHEMY UNIT OF WORK
# ============================================================================

class SQLAlchemyUnitOfWork(UnitOfWork):
    """
    Unit of Work implementation with SQLAlchemy
    The session and repositories live per thread, so one instance can be
    shared by services that run estimates on worker threads.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        cache_client: Optional[Any] = None,
        cache_ttl: int = 300
    ):
        self.session_factory = session_factory
        self.cache_client = cache_client
        self.cache_ttl = cache_ttl
        self._local = threading.local()
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def session(self) -> Session:
        return self._local.session

    def __enter__(self):
        session = self.session_factory()
        self._local.session = session

        # Initialize repositories
        pricing_rules: PricingRuleRepository = SQLAlchemyPricingRuleRepository(session)
        if self.cache_client is not None:
            pricing_rules = CachingPricingRuleRepository(pricing_rules, self.cache_client, self.cache_ttl)
        self._local.pricing_rules = pricing_rules
        self._local.user_passes = SQLAlchemyUserPassRepository(session)
        self._local.parking_records = SQLAlchemyParkingRecordRepository(session)
        self._local.spot_queues = SQLAlchemySpotQueueRepository(session)
        self._local.parking_lots = SQLAlchemyParkingLotRepository(session)

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self._logger.error(f"Exception in unit of work: {exc_val}")
            self.rollback()
        else:
            self.commit()

        self.session.close()

    def commit(self):
        """Commit the transaction"""
        try:
            self.session.commit()
            self._logger.debug("Transaction committed")
        except SQLAlchemyError as e:
            self._logger.error(f"Error committing transaction: {e}")
            self.session.rollback()
            raise

    def rollback(self):
        """Rollback the transaction"""
        self.session.rollback()
        self._logger.debug("Transaction rolled back")

    @property
    def pricing_rules(self) -> PricingRuleRepository:
        return self._local.pricing_rules

    @property
    def user_passes(self) -> SQLAlchemyUserPassRepository:
        return self._local.user_passes

    @property
    def parking_records(self) -> SQLAlchemyParkingRecordRepository:
        return self._local.parking_records

    @property
    def spot_queues(self) -> SQLAlchemySpotQueueRepository:
        return self._local.spot_queues

    @property
    def parking_lots(self) -> SQLAlchemyParkingLotRepository:
        return self._local.parking_lots


# ============================================================================
# CACHING REPOSITORY (Decorator Pattern)
# ============================================================================

class CachingPricingRuleRepository(PricingRuleRepository):
    """
    Repository decorator that caches the ordered rule list in Redis
    Every write invalidates the cached list.
    """

    CACHE_KEY = "carpso:pricing_rules"

    def __init__(self, repository: PricingRuleRepository, cache_client: Any, ttl_seconds: int = 300):
        self.repository = repository
        self.cache = cache_client
        self.ttl_seconds = ttl_seconds
        self._logger = logging.getLogger(self.__class__.__name__)

    def _invalidate(self) -> None:
        try:
            self.cache.delete(self.CACHE_KEY)
        except redis.RedisError as e:
            self._logger.error(f"Failed to invalidate rule cache: {e}")

    def get_all(self) -> List[PricingRule]:
        try:
            cached = self.cache.get(self.CACHE_KEY)
        except redis.RedisError as e:
            self._logger.error(f"Rule cache unavailable: {e}")
            cached = None

        if cached:
            self._logger.debug("Cache hit for pricing rules")
            return [PricingRule.from_dict(data) for data in json.loads(cached)]

        rules = self.repository.get_all()
        try:
            payload = json.dumps([rule.to_dict() for rule in rules])
            self.cache.set(self.CACHE_KEY, payload, ex=self.ttl_seconds)
            self._logger.debug(f"Cached {len(rules)} pricing rules")
        except redis.RedisError as e:
            self._logger.error(f"Failed to cache pricing rules: {e}")
        return rules

    def get(self, id: str) -> Optional[PricingRule]:
        return self.repository.get(id)

    def add(self, entity: PricingRule) -> PricingRule:
        result = self.repository.add(entity)
        self._invalidate()
        return result

    def update(self, entity: PricingRule) -> PricingRule:
        result = self.repository.update(entity)
        self._invalidate()
        return result

    def save(self, rule: PricingRule) -> PricingRule:
        result = self.repository.save(rule)
        self._invalidate()
        return result

    def delete(self, id: str) -> bool:
        result = self.repository.delete(id)
        if result:
            self._invalidate()
        return result


# ============================================================================
# REPOSITORY FACTORY
# ============================================================================

class RepositoryFactory:
    """Factory for creating units of work"""

    @staticmethod
    def create_engine_for(database_url: str):
        """Create an engine; in-memory SQLite shares one connection across threads"""
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(
                database_url,
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(database_url, echo=False)

    @staticmethod
    def create_in_memory_uow(cache_client: Optional[Any] = None) -> InMemoryUnitOfWork:
        """Create in-memory Unit of Work for testing"""
        return InMemoryUnitOfWork(cache_client=cache_client)

    @staticmethod
    def create_sqlalchemy_uow(
        database_url: str,
        cache_client: Optional[Any] = None,
        cache_ttl: int = 300
    ) -> SQLAlchemyUnitOfWork:
        """Create SQLAlchemy Unit of Work"""
        engine = RepositoryFactory.create_engine_for(database_url)
        SessionLocal = sessionmaker(autoflush=False, bind=engine, expire_on_commit=False)

        # Create tables if they don't exist
        Base.metadata.create_all(bind=engine)

        return SQLAlchemyUnitOfWork(SessionLocal, cache_client=cache_client, cache_ttl=cache_ttl)

    @staticmethod
    def create_redis_client(redis_url: str) -> redis.Redis:
        return redis.Redis.from_url(redis_url)
