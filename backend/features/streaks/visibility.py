from datetime import datetime, timedelta
from typing import Dict, List, Optional

VERSE_DWELL_THRESHOLD = timedelta(seconds=8)


class VerseVisibilityAggregator:
    """
    Debounces raw verse visibility into "verse read" credits.

    Holds the transient ``verse_id -> first_seen_at`` windows. Methods return
    the verse ids that earned a credit; the caller owns the daily set and
    decides whether a credit is new.
    """

    def __init__(self, dwell_threshold: timedelta = VERSE_DWELL_THRESHOLD):
        self._dwell_threshold = dwell_threshold
        self._windows: Dict[str, datetime] = {}

    @property
    def open_windows(self) -> Dict[str, datetime]:
        return dict(self._windows)

    def became_visible(self, verse_id: str, at: datetime) -> None:
        if not verse_id:
            return
        self._windows.setdefault(verse_id, at)

    def no_longer_visible(self, verse_id: str, at: datetime) -> Optional[str]:
        first_seen_at = self._windows.pop(verse_id, None)
        if first_seen_at is None:
            return None
        if at - first_seen_at < self._dwell_threshold:
            return None
        return verse_id

    def interacted(self, verse_id: str) -> Optional[str]:
        # Explicit intent skips the dwell rule.
        if not verse_id:
            return None
        self._windows.pop(verse_id, None)
        return verse_id

    def sweep_matured(self, at: datetime) -> List[str]:
        """Close and return every window that has already reached the dwell threshold."""
        matured = [
            verse_id
            for verse_id, first_seen_at in self._windows.items()
            if at - first_seen_at >= self._dwell_threshold
        ]
        for verse_id in matured:
            del self._windows[verse_id]
        return matured

    def clear(self) -> None:
        self._windows.clear()
