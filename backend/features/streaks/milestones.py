from datetime import datetime
from typing import Optional

from backend.models.streak import Milestone, MilestoneAchievement, StreakLedgerState


def milestone_for_streak(streak: int) -> Optional[Milestone]:
    """Milestone whose threshold equals ``streak`` exactly, if any."""
    for milestone in Milestone:
        if milestone.required_streak == streak:
            return milestone
    return None


def record_milestone(state: StreakLedgerState, streak: int, at: datetime) -> Optional[MilestoneAchievement]:
    """Record a new achievement when ``streak`` lands on a threshold.

    Replaces any earlier achievement; only the latest one can be live.
    """
    milestone = milestone_for_streak(streak)
    if milestone is None:
        return None
    achievement = MilestoneAchievement(milestone=milestone, achieved_at=at)
    state.last_milestone = achievement
    return achievement


def live_milestone_copy(achievement: Optional[MilestoneAchievement], now: datetime) -> Optional[str]:
    if achievement is None or not achievement.is_live(now):
        return None
    return achievement.milestone.acknowledgement_text
