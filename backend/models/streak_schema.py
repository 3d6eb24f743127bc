"""
Persisted shapes of the streak state blob.

Three generations share one storage key. Field names are camelCase on the
wire. Only ``StreakStateV3`` is ever written; V1 and V2 are read-only and get
upgraded on load (see ``backend.features.streaks.migrations``).
"""

from datetime import date, datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from backend.models.streak import EngagementSource, Milestone

CURRENT_SCHEMA_VERSION = 3


class _BlobModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class StreakStateV1(_BlobModel):
    """Legacy blob: coarse streak counters only."""

    schema_version: Optional[Literal[1]] = None
    current_streak: int
    longest_streak: int = 0
    total_engaged_days: int = 0
    first_engaged_at: Optional[datetime] = None
    last_engaged_at: Optional[datetime] = None
    last_engaged_source: Optional[str] = None


class StreakStateV2(_BlobModel):
    """Intermediate blob: adds per-day counters, no milestone tracking."""

    schema_version: Optional[Literal[2]] = None
    current_streak: int
    longest_streak: int
    total_engaged_days: int
    first_engaged_at: Optional[datetime] = None
    last_qualified_date: Optional[date] = None
    last_engaged_source: Optional[str] = None
    day_anchor: date
    verses_read_today: int
    seconds_spent_today: float
    notes_or_highlights_today: int
    verse_ids_read_today: List[str]


class MilestoneAchievementV3(_BlobModel):
    milestone: Milestone
    achieved_at: datetime


class StreakStateV3(_BlobModel):
    """Current blob layout."""

    schema_version: Literal[3] = CURRENT_SCHEMA_VERSION
    current_streak: int
    longest_streak: int
    total_engaged_days: int
    first_engaged_at: Optional[datetime] = None
    last_qualified_date: Optional[date] = None
    last_engaged_source: Optional[EngagementSource] = None
    last_activity_at: Optional[datetime] = None
    day_anchor: date
    verse_ids_read_today: List[str]
    active_reading_seconds_today: float
    reflections_today: int
    last_milestone_achieved: Optional[MilestoneAchievementV3] = None
    qualified_date_history: List[date]
    first_qualification_prompt_pending: bool = False
    first_qualification_prompt_shown: bool = False

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


PersistedStreakState = Union[StreakStateV1, StreakStateV2, StreakStateV3]

# Newest first: a blob is read as the most recent generation it satisfies.
DECODE_ORDER = (StreakStateV3, StreakStateV2, StreakStateV1)
