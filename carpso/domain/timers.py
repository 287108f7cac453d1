# File: carpso/domain/timers.py
"""
Reservation Timer State Machine

A reservation-confirmation dialog gives the user a fixed number of seconds
to drag a slider up to a confirmation threshold. This module models that
dialog as an explicit state machine that is driven by an external ticker,
so it can be exercised without any UI framework.

States:
- IDLE: created, countdown not started
- RUNNING: counting down, progress decays toward 0
- SLIDING: user holds the slider, countdown paused
- CONFIRMED / TIMED_OUT / CANCELLED: terminal

Key Benefits:
- Every transition is a plain method call (pure, synchronous)
- Confirm and timeout callbacks fire at most once and exclude each other
- Tickers are swappable: asyncio in production, manual in tests
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Optional
import asyncio
import logging


DEFAULT_TIMEOUT_SECONDS = 15
SPOT_RESERVATION_TIMEOUT_SECONDS = 60
CONFIRM_THRESHOLD = 95


class TimerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    SLIDING = "sliding"
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({TimerState.CONFIRMED, TimerState.TIMED_OUT, TimerState.CANCELLED})


# ============================================================================
# RESERVATION TIMER
# ============================================================================

class ReservationTimer:
    """
    Countdown with a slide-to-confirm control

    The timer never measures wall-clock time itself: each call to tick()
    stands for one elapsed second.
    """

    def __init__(
        self,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        threshold: float = CONFIRM_THRESHOLD,
        on_confirm: Optional[Callable[[], None]] = None,
        on_timeout: Optional[Callable[[], None]] = None
    ):
        if timeout_seconds <= 0:
            raise ValueError("Timeout must be a positive number of seconds")

        self.timeout_seconds = timeout_seconds
        self.threshold = threshold
        self.on_confirm = on_confirm
        self.on_timeout = on_timeout

        self._state = TimerState.IDLE
        self._time_left = timeout_seconds
        self._slider_value = 0.0
        self._disabled = False
        self._start_pending = False
        self._outcome_fired = False
        self.logger = logging.getLogger(self.__class__.__name__)

    # ========================================================================
    # READ-ONLY STATE
    # ========================================================================

    @property
    def state(self) -> TimerState:
        return self._state

    @property
    def time_left(self) -> int:
        return self._time_left

    @property
    def slider_value(self) -> float:
        return self._slider_value

    @property
    def disabled(self) -> bool:
        return self._disabled

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def progress(self) -> float:
        """Confirmation progress decaying in lockstep with the remaining time"""
        return max(0.0, self._time_left / self.timeout_seconds * self.threshold)

    @property
    def awaiting_start(self) -> bool:
        """Running, or asked to start while disabled"""
        return self._state == TimerState.RUNNING or (self._start_pending and not self.is_terminal)

    # ========================================================================
    # TRANSITIONS
    # ========================================================================

    def activate(self) -> bool:
        """
        (Re)start the countdown from the full timeout
        A disabled timer remembers the request and starts once re-enabled.
        """
        if self.is_terminal or self._state == TimerState.SLIDING:
            return False
        if self._disabled:
            self._start_pending = True
            return False

        self._start_pending = False
        self._time_left = self.timeout_seconds
        self._slider_value = self.progress
        self._state = TimerState.RUNNING
        self.logger.debug(f"Countdown started: {self.timeout_seconds}s")
        return True

    def tick(self) -> None:
        """Advance the countdown by one second"""
        if self._disabled or self._state != TimerState.RUNNING:
            return

        self._time_left = max(0, self._time_left - 1)
        self._slider_value = self.progress

        if self._time_left == 0:
            self._finish(TimerState.TIMED_OUT, self.on_timeout)

    def pointer_down(self) -> bool:
        """User grabs the slider: the countdown pauses"""
        if self._disabled or self._state != TimerState.RUNNING:
            return False
        self._state = TimerState.SLIDING
        return True

    def change_value(self, value: float) -> None:
        """Slider moved; reaching the threshold confirms immediately"""
        if self._disabled or self.is_terminal:
            return

        self._slider_value = value
        if value >= self.threshold:
            self._finish(TimerState.CONFIRMED, self.on_confirm)

    def pointer_up(self, value: Optional[float] = None) -> None:
        """User releases the slider: confirm at the threshold, otherwise resume"""
        if self._disabled or self._state != TimerState.SLIDING:
            return

        if value is not None:
            self._slider_value = value

        if self._slider_value >= self.threshold:
            self._finish(TimerState.CONFIRMED, self.on_confirm)
        else:
            self._state = TimerState.RUNNING
            self._slider_value = self.progress

    def cancel(self) -> None:
        """Dialog closed: stop without firing any callback"""
        if self.is_terminal:
            return
        self._state = TimerState.CANCELLED
        self.logger.debug("Countdown cancelled")

    def set_disabled(self, disabled: bool) -> None:
        """Disabling pauses everything; re-enabling restarts the countdown from the full timeout"""
        if disabled == self._disabled:
            return

        self._disabled = disabled
        if not disabled and self.awaiting_start:
            self.activate()

    def _finish(self, state: TimerState, callback: Optional[Callable[[], None]]) -> None:
        if self._outcome_fired:
            return

        self._outcome_fired = True
        self._state = state
        self.logger.info(f"Reservation timer finished: {state.value}")
        if callback is not None:
            callback()


# ============================================================================
# TICKERS
# ============================================================================

class Ticker(ABC):
    """Drives a timer's tick() from some clock source"""

    def __init__(self, timer: ReservationTimer):
        self.timer = timer

    @abstractmethod
    def stop(self) -> None:
        pass


class ManualTicker(Ticker):
    """Ticker advanced explicitly by the caller"""

    def advance(self, seconds: int = 1) -> None:
        for _ in range(seconds):
            if self.timer.is_terminal:
                break
            self.timer.tick()

    def stop(self) -> None:
        self.timer.cancel()


class AsyncioTicker(Ticker):
    """Ticker running as a cancellable task on the current asyncio loop"""

    def __init__(self, timer: ReservationTimer, interval: float = 1.0):
        super().__init__(timer)
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    def start(self) -> Optional[asyncio.Task]:
        """
        Activate the timer and schedule the tick loop
        Returns: the task, or None when the timer can never count down
        """
        self.timer.activate()
        if not self.timer.awaiting_start:
            self.timer.logger.debug("Timer cannot run; no tick loop scheduled")
            return None

        self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    async def _run(self) -> None:
        while not self.timer.is_terminal:
            await asyncio.sleep(self.interval)
            self.timer.tick()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self.timer.cancel()
