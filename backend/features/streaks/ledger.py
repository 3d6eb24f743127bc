from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from backend.features.streaks.milestones import record_milestone
from backend.models.streak import (
    EngagementSource,
    MilestoneAchievement,
    QualificationReason,
    StreakLedgerState,
)


@dataclass(frozen=True)
class LedgerTransition:
    day: date
    reason: QualificationReason
    previous_streak: int
    current_streak: int
    continued: bool
    milestone: Optional[MilestoneAchievement] = None
    first_qualification: bool = False


class StreakLedger:
    """Deterministic, idempotent day-transition logic over ``StreakLedgerState``.

    At most one qualification per calendar day. A qualification on the day
    after the last one extends the streak; anything later starts over at 1.
    Missed days are only noticed lazily, by ``reset_if_missed_day``.
    """

    def __init__(self, state: Optional[StreakLedgerState] = None):
        self.state = state or StreakLedgerState()

    def is_qualified_on(self, day: date) -> bool:
        return self.state.last_qualified_date == day

    def apply_qualification(
        self,
        *,
        today: date,
        at: datetime,
        reason: QualificationReason,
        source: EngagementSource = EngagementSource.READER,
        day_start: Optional[datetime] = None,
    ) -> Optional[LedgerTransition]:
        """Qualify ``today``; None when it is already qualified or earlier than the last qualified day.

        ``first_engaged_at`` records ``day_start`` when given, else ``at``.
        """
        state = self.state
        if state.last_qualified_date is not None and today <= state.last_qualified_date:
            return None

        previous = state.current_streak
        last = state.last_qualified_date
        continued = last is not None and (today - last).days == 1
        state.current_streak = previous + 1 if continued else 1

        milestone = record_milestone(state, state.current_streak, at)

        state.last_qualified_date = today
        self._append_history(today)
        state.last_activity_at = at
        state.longest_streak = max(state.longest_streak, state.current_streak)
        state.total_engaged_days += 1
        if state.first_engaged_at is None:
            state.first_engaged_at = day_start or at
        state.last_engaged_source = source

        first = state.total_engaged_days == 1
        if first and not state.first_qualification_prompt_shown:
            state.first_qualification_prompt_pending = True

        return LedgerTransition(
            day=today,
            reason=reason,
            previous_streak=previous,
            current_streak=state.current_streak,
            continued=continued,
            milestone=milestone,
            first_qualification=first,
        )

    def reset_if_missed_day(self, today: date) -> bool:
        """Zero the streak when more than one day passed since the last qualification."""
        state = self.state
        if state.last_qualified_date is None or state.current_streak == 0:
            return False
        if (today - state.last_qualified_date).days <= 1:
            return False
        state.current_streak = 0
        return True

    def consume_first_qualification_prompt(self) -> bool:
        state = self.state
        if state.first_qualification_prompt_shown:
            state.first_qualification_prompt_pending = False
            return False
        if not state.first_qualification_prompt_pending:
            return False
        state.first_qualification_prompt_shown = True
        state.first_qualification_prompt_pending = False
        return True

    def _append_history(self, day: date) -> None:
        history = self.state.qualified_date_history
        if day in history:
            return
        history.append(day)
        history.sort(reverse=True)
