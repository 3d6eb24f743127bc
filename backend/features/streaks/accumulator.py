"""
Active reading accumulation.

Time counts only while the reader is on screen, its content is visible, the
app is in the foreground, and the user interacted within the idle timeout.
A repeating ticker flushes the open segment every few seconds; lifecycle
transitions flush synchronously before the ticker is torn down.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from backend.core.metrics import streak_reading_clocks_running

READING_TICK_SECONDS = 5.0
READER_IDLE_TIMEOUT = timedelta(seconds=20)

logger = logging.getLogger("seek")


class Ticker(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...


TickerFactory = Callable[[float, Callable[["Ticker"], None]], Ticker]


class RepeatingTicker:
    """Calls ``callback(self)`` every ``interval`` seconds on a daemon thread.

    ``cancel`` never joins: a tick that is already waiting on the owner's lock
    will still run and must check whether its ticker is current.
    """

    def __init__(self, interval: float, callback: Callable[["RepeatingTicker"], None]):
        self._interval = interval
        self._callback = callback
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="streak-reading-tick", daemon=True)
        self._thread.start()

    def cancel(self) -> None:
        self._stopped.set()

    @property
    def cancelled(self) -> bool:
        return self._stopped.is_set()

    def _run(self) -> None:
        while not self._stopped.wait(self._interval):
            try:
                self._callback(self)
            except Exception:
                logger.exception("streak.tick_failed")


class ActiveReadingAccumulator:
    """Tracks engagement facts and the open accumulation segment."""

    def __init__(
        self,
        ticker_factory: TickerFactory,
        on_tick: Callable[[Ticker], None],
        *,
        tick_interval: float = READING_TICK_SECONDS,
        idle_timeout: timedelta = READER_IDLE_TIMEOUT,
    ):
        self._ticker_factory = ticker_factory
        self._on_tick = on_tick
        self._tick_interval = tick_interval
        self._idle_timeout = idle_timeout
        self._ticker: Optional[Ticker] = None
        self._segment_start: Optional[datetime] = None

        self.reader_visible = False
        self.reader_content_visible = False
        self.app_active = True
        self.last_interaction_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._ticker is not None

    def is_current(self, ticker: Ticker) -> bool:
        return ticker is self._ticker

    def surfaces_visible(self) -> bool:
        return self.reader_visible and self.reader_content_visible and self.app_active

    def idle_deadline(self) -> Optional[datetime]:
        if self.last_interaction_at is None:
            return None
        return self.last_interaction_at + self._idle_timeout

    def is_engaged(self, now: datetime) -> bool:
        deadline = self.idle_deadline()
        return self.surfaces_visible() and deadline is not None and now <= deadline

    def start_if_engaged(self, now: datetime) -> bool:
        if not self.is_engaged(now):
            return False
        if self._segment_start is None:
            self._segment_start = now
        if self._ticker is None:
            self._ticker = self._ticker_factory(self._tick_interval, self._on_tick)
            self._ticker.start()
            streak_reading_clocks_running.inc()
        return True

    def take_elapsed(self, now: datetime) -> float:
        """Close the open segment at ``now`` and return the seconds to credit.

        Credit stops at the idle deadline. The segment reopens at ``now`` only
        if the reader is still engaged.
        """
        start = self._segment_start
        if start is None:
            return 0.0
        if not self.surfaces_visible():
            self._segment_start = None
            return 0.0

        end = now
        deadline = self.idle_deadline()
        if deadline is not None and deadline < end:
            end = deadline
        elapsed = (end - start).total_seconds() if deadline is not None else 0.0

        self._segment_start = now if self.is_engaged(now) else None
        return max(0.0, elapsed)

    def stop(self) -> None:
        self._segment_start = None
        if self._ticker is None:
            return
        self._ticker.cancel()
        self._ticker = None
        streak_reading_clocks_running.dec()

    def reset_for_new_day(self) -> None:
        self.last_interaction_at = None
        self.stop()
