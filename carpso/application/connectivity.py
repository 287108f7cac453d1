# File: carpso/application/connectivity.py
"""
Shared plumbing for the Carpso application services

- ConnectivityMonitor: every mutating operation checks it first and fails
  fast (None/False) while offline, without touching storage
- ApplicationService: base class wiring the unit of work, the monitor,
  the optional message bus and a re-entrant lock
"""

from typing import Optional, Dict, Any
import logging
import threading

from ..infrastructure.messaging import MessageBus, DomainEvent, EventType
from ..infrastructure.repositories import UnitOfWork


class ConnectivityMonitor:
    """Tracks whether the backing store is reachable"""

    def __init__(self, online: bool = True):
        self._online = online
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online != self._online:
            self.logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
        self._online = online


class ApplicationService:
    """Base class for services that mutate shared stores"""

    def __init__(
        self,
        uow: UnitOfWork,
        connectivity: Optional[ConnectivityMonitor] = None,
        message_bus: Optional[MessageBus] = None
    ):
        self.uow = uow
        self.connectivity = connectivity or ConnectivityMonitor()
        self.message_bus = message_bus
        self.logger = logging.getLogger(self.__class__.__name__)
        self._lock = threading.RLock()

    def _ensure_online(self, operation: str) -> bool:
        if self.connectivity.is_online:
            return True
        self.logger.warning(f"Offline: refusing {operation}")
        return False

    def _publish(
        self,
        event_type: EventType,
        aggregate_id: str,
        aggregate_type: str,
        data: Dict[str, Any]
    ) -> None:
        if self.message_bus is None:
            return
        self.message_bus.publish_event(DomainEvent(
            event_type=event_type,
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            data=data,
            source=self.__class__.__name__,
        ))
