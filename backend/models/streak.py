from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional

MILESTONE_LIVE_WINDOW = timedelta(hours=24)


class EngagementSource(str, Enum):
    READER = "reader"
    DEBUG = "debug"


class QualificationReason(str, Enum):
    """Criterion that qualified a day, in reporting priority order."""

    VERSES = "verses"
    ACTIVE_READING = "active_reading"
    REFLECTION = "reflection"

    @property
    def label(self) -> str:
        return _REASON_LABELS[self]


_REASON_LABELS = {
    QualificationReason.VERSES: "5 distinct verses",
    QualificationReason.ACTIVE_READING: "4 minutes active reading",
    QualificationReason.REFLECTION: "note/highlight reflection",
}


class Milestone(str, Enum):
    WEEK = "week"
    MONTH = "month"
    SEASON = "season"
    YEAR = "year"

    @property
    def required_streak(self) -> int:
        return _MILESTONE_STREAKS[self]

    @property
    def acknowledgement_text(self) -> str:
        return f"{self.value.capitalize()} completed."


_MILESTONE_STREAKS = {
    Milestone.WEEK: 7,
    Milestone.MONTH: 30,
    Milestone.SEASON: 90,
    Milestone.YEAR: 365,
}


@dataclass(frozen=True)
class MilestoneAchievement:
    milestone: Milestone
    achieved_at: datetime

    def is_live(self, now: datetime) -> bool:
        return now - self.achieved_at <= MILESTONE_LIVE_WINDOW


@dataclass
class DailyCounters:
    """
    Day-scoped reading counters. Never carried across days.
    """

    day_anchor: date
    verse_ids_read_today: set[str] = field(default_factory=set)
    active_reading_seconds_today: float = 0.0
    reflections_today: int = 0

    @property
    def verses_read_today(self) -> int:
        return len(self.verse_ids_read_today)


@dataclass
class StreakLedgerState:
    """
    Authoritative streak counters. Day-level, no storage concerns.
    """

    current_streak: int = 0
    longest_streak: int = 0
    total_engaged_days: int = 0
    first_engaged_at: Optional[datetime] = None
    last_qualified_date: Optional[date] = None
    last_engaged_source: Optional[EngagementSource] = None
    last_activity_at: Optional[datetime] = None
    qualified_date_history: list[date] = field(default_factory=list)
    last_milestone: Optional[MilestoneAchievement] = None
    first_qualification_prompt_pending: bool = False
    first_qualification_prompt_shown: bool = False

    @property
    def total_qualified_days(self) -> int:
        return max(self.total_engaged_days, len(self.qualified_date_history))


@dataclass
class StreakEngineState:
    """Everything the engine persists: the ledger plus today's counters."""

    ledger: StreakLedgerState
    counters: DailyCounters


@dataclass(frozen=True)
class StreakSnapshot:
    """Immutable read model published after every mutation."""

    user_id: str
    current_streak: int
    longest_streak: int
    total_qualified_days: int
    last_qualified_date: Optional[date]
    qualified_date_history: tuple[date, ...]
    day_anchor: date
    verses_read_today: int
    active_reading_seconds_today: float
    reflections_today: int
    last_milestone: Optional[MilestoneAchievement]
    last_engaged_source: Optional[EngagementSource]
    first_qualification_prompt_pending: bool
