"""
Daily qualification

Pure, deterministic evaluation of today's counters.
No external calls, no side effects.

A day qualifies when any one criterion is met:
- 5 distinct verses read
- 240 seconds of active reading
- 1 reflection (note or highlight)

When several hold at once the reported reason follows that order; the
outcome is the same either way.
"""

from typing import Optional

from backend.models.streak import DailyCounters, QualificationReason

VERSE_QUALIFICATION_THRESHOLD = 5
ACTIVE_READING_QUALIFICATION_SECONDS = 240.0
REFLECTION_QUALIFICATION_THRESHOLD = 1


def qualification_reason(counters: DailyCounters) -> Optional[QualificationReason]:
    """Return the criterion today's counters satisfy, or None."""
    if counters.verses_read_today >= VERSE_QUALIFICATION_THRESHOLD:
        return QualificationReason.VERSES
    if counters.active_reading_seconds_today >= ACTIVE_READING_QUALIFICATION_SECONDS:
        return QualificationReason.ACTIVE_READING
    if counters.reflections_today >= REFLECTION_QUALIFICATION_THRESHOLD:
        return QualificationReason.REFLECTION
    return None


def qualifies(counters: DailyCounters) -> bool:
    return qualification_reason(counters) is not None
