"""
In-process change notifications for streak state.

Subscribers register a callback and receive the new ``StreakSnapshot`` after
every ledger mutation. A failing subscriber is logged and dropped so it
cannot break the engine or starve the others.
"""

import logging
import threading
from typing import Callable, Dict

from backend.models.streak import StreakSnapshot

logger = logging.getLogger("seek")

StreakListener = Callable[[StreakSnapshot], None]


class StreakChangeHub:
    def __init__(self):
        self._listeners: Dict[int, StreakListener] = {}
        self._next_token = 0
        self._lock = threading.Lock()

    def subscribe(self, listener: StreakListener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unsubscribes it."""
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._listeners[token] = listener

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(token, None)

        return unsubscribe

    def publish(self, snapshot: StreakSnapshot) -> None:
        with self._lock:
            listeners = list(self._listeners.items())

        dead = []
        for token, listener in listeners:
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"[STREAKS] Dropping listener after failure: {e}")
                dead.append(token)

        if dead:
            with self._lock:
                for token in dead:
                    self._listeners.pop(token, None)
