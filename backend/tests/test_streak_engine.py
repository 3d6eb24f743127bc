import random
import threading
from datetime import datetime, timedelta, timezone

from backend.core.metrics import streak_qualifications_total, streak_resets_total
from backend.features.streaks.clock import DayBoundaryResolver
from backend.features.streaks.service import StreakEngineRegistry
from backend.models.streak import EngagementSource, QualificationReason
from backend.models.streak_schema import StreakStateV3


def _read_five_verses(engine, at, prefix="v"):
    for index in range(1, 6):
        engine.record_verse_interaction(f"{prefix}{index}", at=at)


def test_five_verses_then_next_day_then_gap(engine, clock):
    _read_five_verses(engine, clock.now())
    assert engine.is_qualified_today is True
    assert engine.current_streak == 1

    clock.advance(days=1)
    _read_five_verses(engine, clock.now(), prefix="w")
    assert engine.current_streak == 2
    assert engine.longest_streak == 2

    clock.advance(days=2)
    assert engine.reset_if_missed_day() is True
    assert engine.current_streak == 0
    assert engine.longest_streak == 2
    assert engine.is_qualified_today is False
    assert streak_resets_total.value() == 1


def test_qualifying_twice_in_one_day_counts_once(engine, clock):
    _read_five_verses(engine, clock.now())
    engine.record_note_created(at=clock.now())
    engine.record_highlight_created(at=clock.now())

    assert engine.current_streak == 1
    assert engine.total_qualified_days == 1
    assert streak_qualifications_total.value({"reason": "verses"}) == 1
    assert engine.update_if_qualified_today() is True
    assert engine.current_streak == 1


def test_qualification_on_day_after_gap_restarts_at_one(engine, clock):
    engine.record_note_created(at=clock.now())
    clock.advance(days=2)
    engine.record_highlight_created(at=clock.now())

    assert engine.current_streak == 1
    assert engine.longest_streak == 1
    assert engine.total_qualified_days == 2
    assert engine.qualified_date_history == [clock.now().date(), (clock.now() - timedelta(days=2)).date()]


def test_unqualified_activity_does_not_count(engine, clock):
    engine.record_verse_interaction("v1", at=clock.now())
    assert engine.update_if_qualified_today() is False
    assert engine.evaluate_daily_qualification() is None
    assert engine.current_streak == 0


def test_streak_invariants_hold_under_random_activity(engine, clock):
    rng = random.Random(42)
    for _ in range(300):
        step = rng.random()
        if step < 0.4:
            engine.record_note_created(at=clock.now())
        elif step < 0.6:
            engine.record_verse_interaction(f"v{rng.randint(1, 9)}", at=clock.now())
        elif step < 0.9:
            clock.advance(hours=rng.choice([6, 24, 30, 60]))
            engine.reset_if_missed_day()
        else:
            engine.update_if_qualified_today()

        snapshot = engine.snapshot()
        assert 0 <= snapshot.current_streak <= snapshot.longest_streak
        assert snapshot.verses_read_today >= 0
        assert snapshot.active_reading_seconds_today >= 0


def test_day_boundary_follows_configured_timezone(make_engine):
    resolver = DayBoundaryResolver("America/New_York")
    engine = make_engine(resolver=resolver)

    late_evening = datetime(2024, 3, 5, 3, 0, tzinfo=timezone.utc)  # 22:00 on Mar 4 in New York
    next_morning = datetime(2024, 3, 5, 15, 0, tzinfo=timezone.utc)
    engine.record_note_created(at=late_evening)
    engine.record_note_created(at=next_morning)

    assert engine.current_streak == 2


def test_same_instants_are_one_day_in_utc(make_engine):
    engine = make_engine(user_id="utc-reader")
    engine.record_note_created(at=datetime(2024, 3, 5, 3, 0, tzinfo=timezone.utc))
    engine.record_note_created(at=datetime(2024, 3, 5, 15, 0, tzinfo=timezone.utc))

    assert engine.current_streak == 1


def test_week_milestone_copy_lives_for_a_day(engine, clock):
    for _ in range(7):
        engine.record_note_created(at=clock.now())
        if engine.current_streak < 7:
            assert engine.milestone_copy_text is None
            clock.advance(days=1)

    assert engine.current_streak == 7
    assert engine.milestone_copy_text == "Week completed."

    clock.advance(hours=24)
    assert engine.milestone_copy_text == "Week completed."
    clock.advance(seconds=1)
    assert engine.milestone_copy_text is None


def test_listeners_hear_ledger_changes_only(engine, clock):
    seen = []
    unsubscribe = engine.subscribe(seen.append)

    engine.record_verse_interaction("v1", at=clock.now())
    assert seen == []

    engine.record_note_created(at=clock.now())
    assert [snapshot.current_streak for snapshot in seen] == [1]

    unsubscribe()
    clock.advance(days=1)
    engine.record_note_created(at=clock.now())
    assert len(seen) == 1


def test_failing_listener_is_dropped(engine, clock):
    calls = []

    def broken(snapshot):
        raise RuntimeError("listener exploded")

    engine.subscribe(broken)
    engine.subscribe(calls.append)

    engine.record_note_created(at=clock.now())
    clock.advance(days=1)
    engine.record_note_created(at=clock.now())

    assert engine.current_streak == 2
    assert len(calls) == 2


def test_first_qualification_prompt_survives_restart(make_engine, clock):
    engine = make_engine()
    engine.record_note_created(at=clock.now())
    assert engine.snapshot().first_qualification_prompt_pending is True

    restarted = make_engine()
    assert restarted.consume_first_qualification_prompt() is True
    assert restarted.consume_first_qualification_prompt() is False

    again = make_engine()
    assert again.consume_first_qualification_prompt() is False


def test_state_survives_restart(make_engine, clock):
    engine = make_engine()
    _read_five_verses(engine, clock.now())
    engine.close()

    restarted = make_engine()
    assert restarted.current_streak == 1
    assert restarted.is_qualified_today is True
    assert restarted.daily_counters().verse_ids_read_today == {"v1", "v2", "v3", "v4", "v5"}


def test_debug_qualify_marks_source(engine):
    assert engine.debug_qualify_today(QualificationReason.ACTIVE_READING) is True
    snapshot = engine.snapshot()
    assert snapshot.current_streak == 1
    assert snapshot.last_engaged_source is EngagementSource.DEBUG
    assert snapshot.active_reading_seconds_today >= 240


def test_debug_day_advance_breaks_streak(engine):
    engine.debug_qualify_today(QualificationReason.VERSES)
    engine.debug_simulate_day_advance(1)
    assert engine.current_streak == 1

    engine.debug_simulate_day_advance(2)
    assert engine.current_streak == 0
    assert engine.longest_streak == 1


def test_reset_all_wipes_ledger_and_stored_blob(engine, storage):
    engine.debug_qualify_today(QualificationReason.REFLECTION)
    assert storage.keys() == ["seek_streak_state:reader-1"]

    engine.reset_all()

    assert engine.current_streak == 0
    assert engine.longest_streak == 0
    assert engine.qualified_date_history == []
    assert storage.keys() == []


def test_concurrent_events_are_serialized(engine, clock):
    def reader(worker):
        for index in range(50):
            engine.record_verse_interaction(f"w{worker}-v{index}", at=clock.now())

    threads = [threading.Thread(target=reader, args=(worker,)) for worker in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert engine.daily_counters().verses_read_today == 400
    assert engine.current_streak == 1
    assert engine.total_qualified_days == 1


def test_registry_reuses_engine_per_user(registry):
    first = registry.get("alice")
    assert registry.get("alice") is first
    assert registry.get("bob") is not first
    registry.close_all()


def test_event_from_an_earlier_day_never_requalifies(engine, clock):
    _read_five_verses(engine, clock.now())
    engine.record_note_created(at=clock.now() - timedelta(days=1))
    engine.record_note_created(at=clock.now())

    assert engine.current_streak == 1
    assert engine.total_qualified_days == 1
    assert engine.qualified_date_history == [clock.now().date()]
    counters = engine.daily_counters()
    assert counters.day_anchor == clock.now().date()
    assert counters.verses_read_today == 5
    assert counters.reflections_today == 2


def test_negative_day_advance_is_ignored(engine, clock):
    engine.debug_qualify_today(QualificationReason.VERSES)
    engine.debug_simulate_day_advance(-1)
    engine.debug_simulate_day_advance(0)

    counters = engine.daily_counters()
    assert counters.day_anchor == clock.now().date()
    assert counters.verses_read_today == 5
    assert engine.current_streak == 1


def test_first_engagement_recorded_at_start_of_day(make_engine, storage):
    engine = make_engine(resolver=DayBoundaryResolver("America/New_York"))
    engine.record_note_created(at=datetime(2024, 3, 5, 3, 0, tzinfo=timezone.utc))  # Mar 4, 22:00 local

    stored = StreakStateV3.model_validate_json(storage.read("seek_streak_state:reader-1"))
    assert stored.first_engaged_at == datetime(2024, 3, 4, 5, 0, tzinfo=timezone.utc)


def test_registry_evicts_idle_engines_past_cap(clock, tickers, storage):
    registry = StreakEngineRegistry(
        storage, clock=clock, resolver=DayBoundaryResolver("UTC"), ticker_factory=tickers, max_engines=2
    )
    alice = registry.get("alice")
    alice.record_note_created(at=clock.now())
    registry.get("bob")
    registry.get("carol")

    assert len(registry) == 2
    reloaded = registry.get("alice")
    assert reloaded is not alice
    assert reloaded.current_streak == 1
    assert len(registry) == 2


def test_registry_keeps_engines_that_are_reading(clock, tickers, storage):
    registry = StreakEngineRegistry(
        storage, clock=clock, resolver=DayBoundaryResolver("UTC"), ticker_factory=tickers, max_engines=1
    )
    reader = registry.get("reader")
    reader.reader_did_appear(at=clock.now())
    reader.set_reader_content_visible(True, at=clock.now())
    reader.record_reader_interaction(at=clock.now())

    registry.get("other")

    assert len(registry) == 2
    assert registry.get("reader") is reader
    registry.close_all()
