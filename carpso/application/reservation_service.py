# File: carpso/application/reservation_service.py
"""
Reservation Service

Orchestrates one spot reservation from dialog open to parking completion:

    open_reservation -> ReservationTimer counts down (60s)
        confirm  -> estimate cost (pass first) -> open Active record
                    -> release the queue head if this user was notified
        timeout  -> release the queue hold and notify the next user
        cancel   -> no side effects
    complete_parking -> final cost -> complete record -> notify next in queue

Every dialog opening gets a generation token. Estimate refreshes started for
an older generation, or for a session that has since closed, are discarded.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional, Set, Tuple
import asyncio

from ..domain.models import (
    CostEstimate, UserTier, InvalidInputError, DEFAULT_PAYMENT_METHOD,
    generate_id, minutes_between
)
from ..domain.aggregates import ParkingRecord
from ..domain.timers import ReservationTimer, TimerState, SPOT_RESERVATION_TIMEOUT_SECONDS
from ..infrastructure.messaging import MessageBus, EventType
from .connectivity import ApplicationService
from .pricing_service import PricingService
from .queue_service import SpotQueueManager
from .record_service import ParkingRecordLedger

DEFAULT_ESTIMATE_MINUTES = 60


@dataclass
class ReservationSession:
    """One opening of the reservation-confirmation dialog"""
    user_id: str
    lot_id: str
    spot_id: str
    generation: int
    timer: Optional[ReservationTimer] = None
    user_tier: UserTier = UserTier.BASIC
    duration_minutes: int = DEFAULT_ESTIMATE_MINUTES
    session_id: str = field(default_factory=lambda: generate_id("resv"))
    estimate: Optional[CostEstimate] = None
    record: Optional[ParkingRecord] = None
    closed: bool = False

    @property
    def key(self) -> Tuple[str, str]:
        return (self.user_id, self.spot_id)

    @property
    def state(self) -> TimerState:
        return self.timer.state


class ReservationService(ApplicationService):
    """
    Application service tying the timer, pricing, ledger and queues together

    Use cases:
    1. open_reservation / cancel_reservation
    2. refresh_estimate / refresh_estimate_async
    3. complete_parking

    Timer outcomes run inline, or on a worker thread when the timer is
    driven from an asyncio event loop.
    """

    def __init__(
        self,
        pricing_service: PricingService,
        ledger: ParkingRecordLedger,
        queue_manager: SpotQueueManager,
        message_bus: Optional[MessageBus] = None,
        timeout_seconds: int = SPOT_RESERVATION_TIMEOUT_SECONDS
    ):
        super().__init__(ledger.uow, ledger.connectivity, message_bus)
        self.pricing_service = pricing_service
        self.ledger = ledger
        self.queue_manager = queue_manager
        self.timeout_seconds = timeout_seconds
        self._generations: Dict[Tuple[str, str], int] = {}
        self._sessions: Dict[str, ReservationSession] = {}
        self._outcome_tasks: Set[asyncio.Task] = set()

    # ========================================================================
    # DIALOG LIFECYCLE
    # ========================================================================

    def open_reservation(
        self,
        user_id: str,
        lot_id: str,
        spot_id: str,
        user_tier: UserTier = UserTier.BASIC,
        duration_minutes: int = DEFAULT_ESTIMATE_MINUTES
    ) -> ReservationSession:
        """
        Open the confirmation dialog for a spot and start its countdown
        Re-opening for the same user and spot supersedes the previous session.
        """
        if not user_id or not lot_id or not spot_id:
            raise InvalidInputError("User, lot and spot ids are required to reserve a spot")

        with self._lock:
            key = (user_id, spot_id)
            generation = self._generations.get(key, 0) + 1
            self._generations[key] = generation

            for previous in list(self._sessions.values()):
                if previous.key == key:
                    self._close(previous)
                    previous.timer.cancel()

            session = ReservationSession(
                user_id=user_id,
                lot_id=lot_id,
                spot_id=spot_id,
                generation=generation,
                user_tier=UserTier(user_tier),
                duration_minutes=duration_minutes,
            )
            session.timer = ReservationTimer(
                timeout_seconds=self.timeout_seconds,
                on_confirm=lambda: self._dispatch(self._on_confirm, session),
                on_timeout=lambda: self._dispatch(self._on_timeout, session),
            )
            self._sessions[session.session_id] = session

        session.timer.activate()
        self.logger.info(
            f"Reservation {session.session_id} opened for {user_id} on {lot_id}/{spot_id} "
            f"(generation {generation})"
        )
        return session

    def cancel_reservation(self, session: ReservationSession) -> bool:
        """Dialog closed by the user: stop the countdown without side effects"""
        if session.closed:
            return False

        session.timer.cancel()
        self._close(session)
        self.logger.info(f"Reservation {session.session_id} cancelled")
        self._publish(EventType.RESERVATION_CANCELLED, session.session_id, "Reservation", self._event_data(session))
        return True

    def get_session(self, session_id: str) -> Optional[ReservationSession]:
        return self._sessions.get(session_id)

    def is_current(self, session: ReservationSession, generation: Optional[int] = None) -> bool:
        """Whether results computed for this session (and generation) may still be applied"""
        generation = session.generation if generation is None else generation
        with self._lock:
            return (
                not session.closed
                and generation == session.generation
                and self._generations.get(session.key) == generation
            )

    # ========================================================================
    # ESTIMATE REFRESH
    # ========================================================================

    def refresh_estimate(self, session: ReservationSession, now: Optional[datetime] = None) -> Optional[CostEstimate]:
        """Recompute the dialog's cost estimate; None when the result is stale"""
        generation = session.generation
        estimate = self._estimate(session, now)
        return self._apply_estimate(session, generation, estimate)

    async def refresh_estimate_async(
        self,
        session: ReservationSession,
        now: Optional[datetime] = None
    ) -> Optional[CostEstimate]:
        """Same as refresh_estimate, computed off the event loop"""
        generation = session.generation
        estimate = await asyncio.to_thread(self._estimate, session, now)
        return self._apply_estimate(session, generation, estimate)

    def _estimate(self, session: ReservationSession, now: Optional[datetime]) -> CostEstimate:
        return self.pricing_service.calculate_estimated_cost(
            session.lot_id,
            session.duration_minutes,
            user_id=session.user_id,
            user_tier=session.user_tier,
            now=now,
        )

    def _apply_estimate(
        self,
        session: ReservationSession,
        generation: int,
        estimate: CostEstimate
    ) -> Optional[CostEstimate]:
        if not self.is_current(session, generation):
            self.logger.debug(f"Discarding stale estimate for reservation {session.session_id}")
            return None
        session.estimate = estimate
        return estimate

    # ========================================================================
    # TIMER OUTCOMES
    # ========================================================================

    def _dispatch(self, outcome: Callable[[ReservationSession], None], session: ReservationSession) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            outcome(session)
            return

        # pricing, ledger and queue calls block; keep them off the loop
        task = loop.create_task(asyncio.to_thread(outcome, session))
        self._outcome_tasks.add(task)
        task.add_done_callback(self._outcome_done)

    def _outcome_done(self, task: asyncio.Task) -> None:
        self._outcome_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(f"Reservation outcome failed: {task.exception()}")

    async def wait_for_outcomes(self) -> None:
        """Wait until timer outcomes running off the event loop have finished"""
        while self._outcome_tasks:
            await asyncio.gather(*list(self._outcome_tasks), return_exceptions=True)

    def _on_confirm(self, session: ReservationSession) -> None:
        if session.closed:
            return

        session.timer.set_disabled(True)
        try:
            session.estimate = self._estimate(session, None)
            session.record = self.ledger.create_parking_record(session.user_id, session.lot_id, session.spot_id)
            if session.record is None:
                self.logger.warning(f"Reservation {session.session_id} confirmed but no record was opened")
                return

            self._release_queue_hold(session)
            self._publish(EventType.RESERVATION_CONFIRMED, session.session_id, "Reservation", {
                **self._event_data(session),
                "record_id": session.record.record_id,
                "estimated_cost": str(session.estimate.cost),
            })
        finally:
            self._close(session)

    def _on_timeout(self, session: ReservationSession) -> None:
        if session.closed:
            return

        self._close(session)
        self.logger.info(f"Reservation {session.session_id} timed out")
        if self._release_queue_hold(session):
            self.queue_manager.notify_next_in_queue(session.spot_id)
        self._publish(EventType.RESERVATION_TIMED_OUT, session.session_id, "Reservation", self._event_data(session))

    def _release_queue_hold(self, session: ReservationSession) -> bool:
        """Pop the queue head when it is this user's notified entry"""
        head = next(iter(self.queue_manager.get_queue(session.spot_id)), None)
        if head is None or head.user_id != session.user_id or not head.notified:
            return False
        return self.queue_manager.remove_first_from_queue(session.spot_id) is not None

    def _close(self, session: ReservationSession) -> None:
        with self._lock:
            session.closed = True
            self._sessions.pop(session.session_id, None)

    @staticmethod
    def _event_data(session: ReservationSession) -> dict:
        return {
            "user_id": session.user_id,
            "lot_id": session.lot_id,
            "spot_id": session.spot_id,
            "state": session.state.value,
        }

    # ========================================================================
    # COMPLETION
    # ========================================================================

    def complete_parking(
        self,
        record_id: str,
        end_time: Optional[datetime] = None,
        user_tier: UserTier = UserTier.BASIC,
        payment_method: str = DEFAULT_PAYMENT_METHOD
    ) -> Optional[ParkingRecord]:
        """
        Price and complete a parking session, then offer the spot to the queue
        Rules and passes are evaluated as of the session start.
        """
        record = self.ledger.get_parking_record(record_id)
        if record is None or not record.is_active:
            return None

        end_time = end_time or datetime.now()
        cost = self.pricing_service.calculate_estimated_cost(
            record.lot_id,
            minutes_between(record.start_time, end_time),
            user_id=record.user_id,
            user_tier=user_tier,
            now=record.start_time,
        )
        completed = self.ledger.complete_parking_record(record_id, end_time, cost, payment_method)
        if completed is None:
            return None

        if self.queue_manager.get_queue_length(completed.spot_id) > 0:
            self.queue_manager.notify_next_in_queue(completed.spot_id)
        return completed
