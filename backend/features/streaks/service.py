from __future__ import annotations

import threading
from collections import OrderedDict
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional

from backend.core.config import settings
from backend.core.database import create_all_tables, init_engine
from backend.core.logging import log_event
from backend.core.metrics import (
    streak_engines_active,
    streak_milestones_total,
    streak_qualifications_total,
    streak_resets_total,
)
from backend.features.streaks.accumulator import (
    ActiveReadingAccumulator,
    RepeatingTicker,
    Ticker,
    TickerFactory,
)
from backend.features.streaks.clock import Clock, DayBoundaryResolver, SystemClock, normalize_instant
from backend.features.streaks.ledger import StreakLedger
from backend.features.streaks.milestones import live_milestone_copy
from backend.features.streaks.notifications import StreakChangeHub, StreakListener
from backend.features.streaks.persistence import (
    InMemoryStateStorage,
    SqlStateStorage,
    StateStorage,
    StreakStateStore,
)
from backend.features.streaks.qualification import (
    ACTIVE_READING_QUALIFICATION_SECONDS,
    REFLECTION_QUALIFICATION_THRESHOLD,
    VERSE_QUALIFICATION_THRESHOLD,
    qualification_reason,
)
from backend.features.streaks.visibility import VerseVisibilityAggregator
from backend.models.streak import (
    DailyCounters,
    EngagementSource,
    QualificationReason,
    StreakEngineState,
    StreakLedgerState,
    StreakSnapshot,
)

DEFAULT_KEY_PREFIX = "seek_streak_state"
DEFAULT_MAX_ENGINES = 1024


def _clean_verse_id(verse_id: Optional[str]) -> str:
    return (verse_id or "").strip()


class StreakEngine:
    """Owner of one user's streak state.

    Every event and every reading tick runs under one re-entrant lock, so no
    two mutations interleave. Each event resynchronizes to today first, then
    updates its counter, then re-evaluates qualification. State is saved after
    every mutation. Query properties read the last published snapshot and
    never wait for the lock. Nothing here raises to callers.
    """

    def __init__(
        self,
        *,
        user_id: str = "local",
        storage: Optional[StateStorage] = None,
        clock: Optional[Clock] = None,
        resolver: Optional[DayBoundaryResolver] = None,
        ticker_factory: Optional[TickerFactory] = None,
        key_prefix: str = DEFAULT_KEY_PREFIX,
    ):
        self.user_id = user_id
        self._lock = threading.RLock()
        self._clock = clock or SystemClock()
        self._resolver = resolver or DayBoundaryResolver()
        self._store = StreakStateStore(
            storage if storage is not None else InMemoryStateStorage(),
            f"{key_prefix}:{user_id}",
            self._resolver,
            user_id=user_id,
        )
        self._hub = StreakChangeHub()
        self._visibility = VerseVisibilityAggregator()
        self._reading = ActiveReadingAccumulator(ticker_factory or RepeatingTicker, self._on_tick)
        self._dirty = False
        self._changed = False

        now = self._clock.now()
        loaded = self._store.load(self._resolver.day_of(now))
        self._ledger = StreakLedger(loaded.state.ledger)
        self._counters = loaded.state.counters
        self._snapshot = self._build_snapshot()
        with self._lock:
            self._synchronize(now)
            self._commit()

    # Event API --------------------------------------------------------
    def reader_did_appear(self, at: Optional[datetime] = None) -> None:
        with self._lock:
            now = self._now(at)
            self._synchronize(now)
            self._reading.reader_visible = True
            self._reading.start_if_engaged(now)
            self._commit()

    def reader_did_disappear(self, at: Optional[datetime] = None) -> None:
        with self._lock:
            now = self._now(at)
            self._flush(now)
            self._visibility.clear()
            self._reading.reader_visible = False
            self._reading.reader_content_visible = False
            self._reading.stop()
            self._commit()

    def set_reader_content_visible(self, visible: bool, at: Optional[datetime] = None) -> None:
        with self._lock:
            now = self._now(at)
            if visible:
                self._synchronize(now)
                self._reading.reader_content_visible = True
                self._reading.start_if_engaged(now)
            else:
                self._flush(now)
                self._visibility.clear()
                self._reading.reader_content_visible = False
                self._reading.stop()
            self._commit()

    def app_did_become_active(self, at: Optional[datetime] = None) -> None:
        with self._lock:
            now = self._now(at)
            self._synchronize(now)
            self._reading.app_active = True
            self._reading.start_if_engaged(now)
            self._commit()

    def app_will_resign_active(self, at: Optional[datetime] = None) -> None:
        self._enter_inactive(at)

    def app_did_enter_background(self, at: Optional[datetime] = None) -> None:
        self._enter_inactive(at)

    def record_reader_interaction(self, at: Optional[datetime] = None) -> None:
        with self._lock:
            self._record_interaction(self._now(at))
            self._commit()

    def record_verse_became_visible(self, verse_id: str, at: Optional[datetime] = None) -> None:
        verse_id = _clean_verse_id(verse_id)
        if not verse_id:
            return
        with self._lock:
            now = self._now(at)
            self._record_interaction(now)
            self._visibility.became_visible(verse_id, now)
            self._commit()

    def record_verse_no_longer_visible(self, verse_id: str, at: Optional[datetime] = None) -> None:
        verse_id = _clean_verse_id(verse_id)
        if not verse_id:
            return
        with self._lock:
            now = self._now(at)
            self._record_interaction(now)
            credited = self._visibility.no_longer_visible(verse_id, now)
            if credited:
                self._credit_verse(credited, now)
            self._commit()

    def record_verse_interaction(self, verse_id: str, at: Optional[datetime] = None) -> None:
        verse_id = _clean_verse_id(verse_id)
        if not verse_id:
            return
        with self._lock:
            now = self._now(at)
            self._record_interaction(now)
            credited = self._visibility.interacted(verse_id)
            if credited:
                self._credit_verse(credited, now)
            self._commit()

    def record_note_created(self, at: Optional[datetime] = None) -> None:
        self._record_reflection(self._now(at), "note_created")

    def record_highlight_created(self, at: Optional[datetime] = None) -> None:
        self._record_reflection(self._now(at), "highlight_created")

    def flush_active_reading(self, at: Optional[datetime] = None) -> None:
        with self._lock:
            self._flush(self._now(at))
            self._commit()

    def update_if_qualified_today(self, at: Optional[datetime] = None) -> bool:
        """Run the day transition if today qualifies; returns is-qualified-today."""
        with self._lock:
            now = self._now(at)
            self._synchronize(now)
            self._update_if_qualified(now)
            self._commit()
            return self._ledger.is_qualified_on(self._today(now))

    def reset_if_missed_day(self, at: Optional[datetime] = None) -> bool:
        """Resynchronize to the day of ``at``; True when the streak was zeroed."""
        with self._lock:
            reset = self._synchronize(self._now(at))
            self._commit()
            return reset

    def evaluate_daily_qualification(self, at: Optional[datetime] = None) -> Optional[QualificationReason]:
        with self._lock:
            self._synchronize(self._now(at))
            self._commit()
            return qualification_reason(self._counters)

    def consume_first_qualification_prompt(self) -> bool:
        """True exactly once after the first ever qualifying day."""
        with self._lock:
            before = (
                self._ledger.state.first_qualification_prompt_pending,
                self._ledger.state.first_qualification_prompt_shown,
            )
            shown = self._ledger.consume_first_qualification_prompt()
            after = (
                self._ledger.state.first_qualification_prompt_pending,
                self._ledger.state.first_qualification_prompt_shown,
            )
            if before != after:
                self._dirty = True
            self._commit()
            return shown

    # Debug / reset tooling --------------------------------------------
    def reset_all(self, at: Optional[datetime] = None) -> None:
        """Wipe ledger, counters and the stored blob."""
        with self._lock:
            now = self._now(at)
            self._reading.stop()
            self._reading.last_interaction_at = None
            self._visibility.clear()
            self._ledger = StreakLedger(StreakLedgerState())
            self._counters = DailyCounters(day_anchor=self._resolver.day_of(now))
            self._store.clear()
            self._dirty = False
            self._changed = True
            log_event("info", "streak.reset_all", user_id=self.user_id, event_type="streak.reset_all")
            self._commit()

    def debug_qualify_today(self, reason: QualificationReason, at: Optional[datetime] = None) -> bool:
        with self._lock:
            now = self._now(at)
            self._synchronize(now)
            counters = self._counters
            if reason is QualificationReason.VERSES:
                for index in range(VERSE_QUALIFICATION_THRESHOLD):
                    counters.verse_ids_read_today.add(f"debug-verse-{index}")
            elif reason is QualificationReason.ACTIVE_READING:
                counters.active_reading_seconds_today = max(
                    counters.active_reading_seconds_today, ACTIVE_READING_QUALIFICATION_SECONDS
                )
            else:
                counters.reflections_today = max(counters.reflections_today, REFLECTION_QUALIFICATION_THRESHOLD)
            self._dirty = True
            self._update_if_qualified(now, source=EngagementSource.DEBUG)
            self._commit()
            return self._ledger.is_qualified_on(self._today(now))

    def debug_simulate_day_advance(self, days: int) -> None:
        """Resynchronize as if ``days`` more days had passed. Non-positive values do nothing."""
        if days <= 0:
            return
        with self._lock:
            self._synchronize(self._clock.now() + timedelta(days=days))
            self._commit()

    def close(self) -> None:
        """Flush and stop the reading clock; state stays as saved."""
        with self._lock:
            if self._reading.running:
                self._flush(self._clock.now())
            self._reading.stop()
            self._commit()

    # Query surface ----------------------------------------------------
    @property
    def current_streak(self) -> int:
        return self._snapshot.current_streak

    @property
    def longest_streak(self) -> int:
        return self._snapshot.longest_streak

    @property
    def total_qualified_days(self) -> int:
        return self._snapshot.total_qualified_days

    @property
    def is_qualified_today(self) -> bool:
        return self._snapshot.last_qualified_date == self._resolver.day_of(self._clock.now())

    @property
    def milestone_copy_text(self) -> Optional[str]:
        return live_milestone_copy(self._snapshot.last_milestone, self._clock.now())

    @property
    def qualified_date_history(self) -> List[date]:
        return list(self._snapshot.qualified_date_history)

    @property
    def reading_clock_running(self) -> bool:
        return self._reading.running

    def snapshot(self) -> StreakSnapshot:
        return self._snapshot

    def daily_counters(self) -> DailyCounters:
        with self._lock:
            counters = self._counters
            return DailyCounters(
                day_anchor=counters.day_anchor,
                verse_ids_read_today=set(counters.verse_ids_read_today),
                active_reading_seconds_today=counters.active_reading_seconds_today,
                reflections_today=counters.reflections_today,
            )

    def subscribe(self, listener: StreakListener) -> Callable[[], None]:
        return self._hub.subscribe(listener)

    def get_state(self) -> dict:
        snapshot = self._snapshot
        milestone = snapshot.last_milestone
        return {
            "user_id": snapshot.user_id,
            "current_streak": snapshot.current_streak,
            "longest_streak": snapshot.longest_streak,
            "total_qualified_days": snapshot.total_qualified_days,
            "is_qualified_today": self.is_qualified_today,
            "last_qualified_date": snapshot.last_qualified_date.isoformat() if snapshot.last_qualified_date else None,
            "qualified_date_history": [day.isoformat() for day in snapshot.qualified_date_history],
            "milestone_copy_text": self.milestone_copy_text,
            "last_milestone": {
                "milestone": milestone.milestone.value,
                "achieved_at": milestone.achieved_at.isoformat(),
            } if milestone else None,
            "today": {
                "day": snapshot.day_anchor.isoformat(),
                "verses_read": snapshot.verses_read_today,
                "active_reading_seconds": round(snapshot.active_reading_seconds_today, 3),
                "reflections": snapshot.reflections_today,
            },
            "first_qualification_prompt_pending": snapshot.first_qualification_prompt_pending,
        }

    # Internal helpers -------------------------------------------------
    def _now(self, at: Optional[datetime]) -> datetime:
        return normalize_instant(at) if at is not None else self._clock.now()

    def _today(self, now: datetime) -> date:
        # Days never run backwards: an instant before the current anchor counts toward the anchor day.
        day = self._resolver.day_of(now)
        anchor = self._counters.day_anchor
        return anchor if day < anchor else day

    def _synchronize(self, now: datetime) -> bool:
        today = self._today(now)
        if self._counters.day_anchor != today:
            self._counters = DailyCounters(day_anchor=today)
            self._visibility.clear()
            self._reading.reset_for_new_day()
            self._dirty = True

        reset = self._ledger.reset_if_missed_day(today)
        if reset:
            self._dirty = True
            self._changed = True
            streak_resets_total.inc()
            log_event(
                "info",
                "streak.reset_missed_day",
                user_id=self.user_id,
                event_type="streak.reset",
                extra={"last_qualified_date": self._ledger.state.last_qualified_date, "today": today},
            )
        return reset

    def _record_interaction(self, now: datetime) -> None:
        self._synchronize(now)
        if self._reading.running:
            # Close the open segment against the previous interaction's idle deadline.
            self._flush(now)
        self._reading.last_interaction_at = now
        self._ledger.state.last_activity_at = now
        self._dirty = True
        for verse_id in self._visibility.sweep_matured(now):
            self._credit_verse(verse_id, now)
        self._reading.start_if_engaged(now)

    def _record_reflection(self, now: datetime, kind: str) -> None:
        with self._lock:
            self._synchronize(now)
            self._counters.reflections_today += 1
            self._ledger.state.last_activity_at = now
            self._dirty = True
            log_event("debug", f"streak.{kind}", user_id=self.user_id, extra=self._counter_fields())
            self._update_if_qualified(now)
            self._commit()

    def _enter_inactive(self, at: Optional[datetime]) -> None:
        with self._lock:
            now = self._now(at)
            self._flush(now)
            self._reading.app_active = False
            self._reading.stop()
            self._commit()

    def _credit_verse(self, verse_id: str, now: datetime) -> None:
        verse_ids = self._counters.verse_ids_read_today
        if not verse_id or verse_id in verse_ids:
            return
        verse_ids.add(verse_id)
        self._ledger.state.last_activity_at = now
        self._dirty = True
        self._update_if_qualified(now)

    def _flush(self, now: datetime) -> None:
        self._synchronize(now)
        for verse_id in self._visibility.sweep_matured(now):
            self._credit_verse(verse_id, now)

        seconds = self._reading.take_elapsed(now)
        if seconds > 0:
            self._counters.active_reading_seconds_today += seconds
            self._ledger.state.last_activity_at = now
            self._dirty = True
            self._update_if_qualified(now)

        if self._reading.running and not self._reading.is_engaged(now):
            self._reading.stop()

    def _on_tick(self, ticker: Ticker) -> None:
        with self._lock:
            if not self._reading.is_current(ticker):
                return
            self._flush(self._clock.now())
            self._commit()

    def _update_if_qualified(self, now: datetime, source: EngagementSource = EngagementSource.READER) -> None:
        reason = qualification_reason(self._counters)
        if reason is None:
            return
        today = self._today(now)
        transition = self._ledger.apply_qualification(
            today=today,
            at=now,
            reason=reason,
            source=source,
            day_start=self._resolver.start_of_day(today),
        )
        if transition is None:
            return

        self._dirty = True
        self._changed = True
        streak_qualifications_total.inc(labels={"reason": reason.value})
        log_event(
            "info",
            "streak.qualified_day",
            user_id=self.user_id,
            event_type="streak.qualified",
            extra={
                "qualified_by": reason.label,
                "current_streak": transition.current_streak,
                "continued": transition.continued,
                **self._counter_fields(),
            },
        )
        if transition.milestone is not None:
            streak_milestones_total.inc(labels={"milestone": transition.milestone.milestone.value})
            log_event(
                "info",
                "streak.milestone_achieved",
                user_id=self.user_id,
                event_type="streak.milestone",
                extra={"milestone": transition.milestone.milestone.value},
            )

    def _counter_fields(self) -> dict:
        return {
            "verses": self._counters.verses_read_today,
            "active_seconds": int(round(self._counters.active_reading_seconds_today)),
            "reflections": self._counters.reflections_today,
        }

    def _commit(self) -> None:
        if self._dirty:
            self._store.save(StreakEngineState(ledger=self._ledger.state, counters=self._counters))
            self._dirty = False
        self._snapshot = self._build_snapshot()
        if self._changed:
            self._changed = False
            self._hub.publish(self._snapshot)

    def _build_snapshot(self) -> StreakSnapshot:
        ledger, counters = self._ledger.state, self._counters
        return StreakSnapshot(
            user_id=self.user_id,
            current_streak=ledger.current_streak,
            longest_streak=ledger.longest_streak,
            total_qualified_days=ledger.total_qualified_days,
            last_qualified_date=ledger.last_qualified_date,
            qualified_date_history=tuple(ledger.qualified_date_history),
            day_anchor=counters.day_anchor,
            verses_read_today=counters.verses_read_today,
            active_reading_seconds_today=counters.active_reading_seconds_today,
            reflections_today=counters.reflections_today,
            last_milestone=ledger.last_milestone,
            last_engaged_source=ledger.last_engaged_source,
            first_qualification_prompt_pending=ledger.first_qualification_prompt_pending,
        )


class StreakEngineRegistry:
    """One engine per user/device, created lazily over shared storage and clock.

    Holds at most ``max_engines`` engines. Past the cap the least recently used
    engines whose reading clock is stopped are closed and dropped; their state
    is already saved, so the next ``get`` reloads it.
    """

    def __init__(
        self,
        storage: Optional[StateStorage] = None,
        *,
        clock: Optional[Clock] = None,
        resolver: Optional[DayBoundaryResolver] = None,
        ticker_factory: Optional[TickerFactory] = None,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        max_engines: int = DEFAULT_MAX_ENGINES,
    ):
        self._storage = storage if storage is not None else InMemoryStateStorage()
        self._clock = clock or SystemClock()
        self._resolver = resolver or DayBoundaryResolver()
        self._ticker_factory = ticker_factory
        self._key_prefix = key_prefix
        self._max_engines = max(1, max_engines)
        self._engines: "OrderedDict[str, StreakEngine]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._engines)

    def get(self, user_id: str) -> StreakEngine:
        evicted: List[StreakEngine] = []
        with self._lock:
            engine = self._engines.get(user_id)
            if engine is not None:
                self._engines.move_to_end(user_id)
                return engine
            engine = StreakEngine(
                user_id=user_id,
                storage=self._storage,
                clock=self._clock,
                resolver=self._resolver,
                ticker_factory=self._ticker_factory,
                key_prefix=self._key_prefix,
            )
            self._engines[user_id] = engine
            if len(self._engines) > self._max_engines:
                evicted = self._evict_idle(keep=user_id)
            streak_engines_active.set(len(self._engines))
        for stale in evicted:
            stale.close()
        return engine

    def _evict_idle(self, keep: str) -> List[StreakEngine]:
        """Drop least recently used engines with a stopped reading clock until back under the cap."""
        evicted = []
        for user_id, engine in list(self._engines.items()):
            if len(self._engines) <= self._max_engines:
                break
            if user_id == keep or engine.reading_clock_running:
                continue
            del self._engines[user_id]
            evicted.append(engine)
        if evicted:
            log_event("info", "streak.engines_evicted", event_type="streak.evict", extra={"count": len(evicted)})
        return evicted

    def close_all(self) -> None:
        with self._lock:
            engines = list(self._engines.values())
            self._engines.clear()
            streak_engines_active.set(0)
        for engine in engines:
            engine.close()


def build_streak_registry(settings_obj=None) -> StreakEngineRegistry:
    """Registry wired from configuration: storage backend, timezone, key prefix."""
    cfg = settings_obj or settings
    storage: StateStorage
    if cfg.STREAK_STORAGE.lower() == "database":
        db_engine = init_engine(cfg.TEST_DATABASE_URL or cfg.DATABASE_URL)
        create_all_tables(db_engine)
        storage = SqlStateStorage(db_engine)
    else:
        storage = InMemoryStateStorage()
    return StreakEngineRegistry(
        storage,
        resolver=DayBoundaryResolver(cfg.STREAK_TIMEZONE),
        key_prefix=cfg.STREAK_STATE_KEY_PREFIX,
        max_engines=cfg.STREAK_MAX_ENGINES,
    )
