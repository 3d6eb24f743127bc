"""
backend/features/streaks/migrations.py

Load-and-upgrade pipeline for the streak state blob.

    decode_blob -> upgrade_v1_to_v2 -> upgrade_v2_to_v3 -> to_engine_state

Every step moves forward one generation; nothing here can produce an older
shape. Decoding tries the newest generation first.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from backend.features.streaks.clock import DayBoundaryResolver, normalize_instant
from backend.models.streak import (
    DailyCounters,
    EngagementSource,
    MilestoneAchievement,
    StreakEngineState,
    StreakLedgerState,
)
from backend.models.streak_schema import (
    DECODE_ORDER,
    MilestoneAchievementV3,
    PersistedStreakState,
    StreakStateV1,
    StreakStateV2,
    StreakStateV3,
)


@dataclass(frozen=True)
class UpgradeResult:
    state: StreakStateV3
    source_version: int

    @property
    def migrated(self) -> bool:
        return self.source_version != 3


def decode_blob(payload: Optional[str]) -> Optional[PersistedStreakState]:
    """Parse ``payload`` as the newest generation it satisfies, or None."""
    if not payload:
        return None
    for model in DECODE_ORDER:
        try:
            return model.model_validate_json(payload)
        except PydanticValidationError:
            continue
    return None


def schema_version_of(blob: PersistedStreakState) -> int:
    if isinstance(blob, StreakStateV3):
        return 3
    if isinstance(blob, StreakStateV2):
        return 2
    return 1


def upgrade_v1_to_v2(legacy: StreakStateV1, resolver: DayBoundaryResolver, today: date) -> StreakStateV2:
    """Carry the coarse counters; today's counters start empty."""
    last_qualified = resolver.day_of(legacy.last_engaged_at) if legacy.last_engaged_at else None
    return StreakStateV2(
        current_streak=legacy.current_streak,
        longest_streak=legacy.longest_streak,
        total_engaged_days=legacy.total_engaged_days,
        first_engaged_at=legacy.first_engaged_at,
        last_qualified_date=last_qualified,
        last_engaged_source=legacy.last_engaged_source,
        day_anchor=today,
        verses_read_today=0,
        seconds_spent_today=0.0,
        notes_or_highlights_today=0,
        verse_ids_read_today=[],
    )


def upgrade_v2_to_v3(intermediate: StreakStateV2) -> StreakStateV3:
    """Carry daily counters over; milestones start empty."""
    history = [intermediate.last_qualified_date] if intermediate.last_qualified_date else []
    return StreakStateV3(
        current_streak=intermediate.current_streak,
        longest_streak=intermediate.longest_streak,
        total_engaged_days=intermediate.total_engaged_days,
        first_engaged_at=intermediate.first_engaged_at,
        last_qualified_date=intermediate.last_qualified_date,
        last_engaged_source=_coerce_source(intermediate.last_engaged_source),
        last_activity_at=None,
        day_anchor=intermediate.day_anchor,
        verse_ids_read_today=list(dict.fromkeys(intermediate.verse_ids_read_today)),
        active_reading_seconds_today=intermediate.seconds_spent_today,
        reflections_today=intermediate.notes_or_highlights_today,
        last_milestone_achieved=None,
        qualified_date_history=history,
    )


def upgrade_to_current(blob: PersistedStreakState, resolver: DayBoundaryResolver, today: date) -> UpgradeResult:
    source_version = schema_version_of(blob)
    if isinstance(blob, StreakStateV1):
        blob = upgrade_v1_to_v2(blob, resolver, today)
    if isinstance(blob, StreakStateV2):
        blob = upgrade_v2_to_v3(blob)
    return UpgradeResult(state=blob, source_version=source_version)


def to_engine_state(blob: StreakStateV3) -> StreakEngineState:
    """Domain state from a current-generation blob, with invariants restored."""
    current = max(0, blob.current_streak)
    history = normalize_history(blob.qualified_date_history)
    if not history and blob.last_qualified_date is not None:
        history = [blob.last_qualified_date]

    milestone = None
    if blob.last_milestone_achieved is not None:
        milestone = MilestoneAchievement(
            milestone=blob.last_milestone_achieved.milestone,
            achieved_at=normalize_instant(blob.last_milestone_achieved.achieved_at),
        )

    ledger = StreakLedgerState(
        current_streak=current,
        longest_streak=max(current, blob.longest_streak),
        total_engaged_days=max(0, blob.total_engaged_days),
        first_engaged_at=_instant(blob.first_engaged_at),
        last_qualified_date=blob.last_qualified_date,
        last_engaged_source=blob.last_engaged_source,
        last_activity_at=_instant(blob.last_activity_at),
        qualified_date_history=history,
        last_milestone=milestone,
        first_qualification_prompt_pending=blob.first_qualification_prompt_pending,
        first_qualification_prompt_shown=blob.first_qualification_prompt_shown,
    )
    counters = DailyCounters(
        day_anchor=blob.day_anchor,
        verse_ids_read_today={verse_id for verse_id in blob.verse_ids_read_today if verse_id},
        active_reading_seconds_today=max(0.0, blob.active_reading_seconds_today),
        reflections_today=max(0, blob.reflections_today),
    )
    return StreakEngineState(ledger=ledger, counters=counters)


def from_engine_state(state: StreakEngineState) -> StreakStateV3:
    ledger, counters = state.ledger, state.counters
    milestone = None
    if ledger.last_milestone is not None:
        milestone = MilestoneAchievementV3(
            milestone=ledger.last_milestone.milestone,
            achieved_at=ledger.last_milestone.achieved_at,
        )
    return StreakStateV3(
        current_streak=ledger.current_streak,
        longest_streak=ledger.longest_streak,
        total_engaged_days=ledger.total_engaged_days,
        first_engaged_at=ledger.first_engaged_at,
        last_qualified_date=ledger.last_qualified_date,
        last_engaged_source=ledger.last_engaged_source,
        last_activity_at=ledger.last_activity_at,
        day_anchor=counters.day_anchor,
        verse_ids_read_today=sorted(counters.verse_ids_read_today),
        active_reading_seconds_today=counters.active_reading_seconds_today,
        reflections_today=counters.reflections_today,
        last_milestone_achieved=milestone,
        qualified_date_history=list(ledger.qualified_date_history),
        first_qualification_prompt_pending=ledger.first_qualification_prompt_pending,
        first_qualification_prompt_shown=ledger.first_qualification_prompt_shown,
    )


def normalize_history(days: Iterable[date]) -> List[date]:
    """Deduplicated, newest first."""
    return sorted(set(days), reverse=True)


def _instant(value: Optional[datetime]) -> Optional[datetime]:
    return normalize_instant(value) if value is not None else None


def _coerce_source(value: Optional[str]) -> Optional[EngagementSource]:
    if value is None:
        return None
    try:
        return EngagementSource(value)
    except ValueError:
        # Older builds also recorded study-screen engagement; it counts as reading.
        return EngagementSource.READER
