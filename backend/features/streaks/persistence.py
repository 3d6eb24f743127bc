"""
backend/features/streaks/persistence.py

Persistence adapter for the streak state blob.

One blob per user/device key. Loads run through the migration pipeline and a
migrated blob is written back in the current layout straight away. Nothing
here raises to the engine: unreadable state loads as the default state and a
failed write is logged, counted and dropped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from threading import Lock
from typing import Dict, Optional, Protocol

from sqlalchemy import delete, insert, select, update

from backend.core.database import streak_state_blobs
from backend.core.logging import log_event
from backend.core.metrics import streak_persistence_failures_total, streak_state_migrations_total
from backend.features.streaks.clock import DayBoundaryResolver
from backend.features.streaks.migrations import (
    decode_blob,
    from_engine_state,
    to_engine_state,
    upgrade_to_current,
)
from backend.models.streak import DailyCounters, StreakEngineState, StreakLedgerState
from backend.models.streak_schema import CURRENT_SCHEMA_VERSION

logger = logging.getLogger("seek")


class StateStorage(Protocol):
    def read(self, key: str) -> Optional[str]: ...

    def write(self, key: str, payload: str, schema_version: int) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryStateStorage:
    """Process-local storage; used in memory mode and tests."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._blobs: Dict[str, str] = dict(initial or {})
        self._lock = Lock()

    def read(self, key: str) -> Optional[str]:
        with self._lock:
            return self._blobs.get(key)

    def write(self, key: str, payload: str, schema_version: int) -> None:
        with self._lock:
            self._blobs[key] = payload

    def delete(self, key: str) -> None:
        with self._lock:
            self._blobs.pop(key, None)

    def keys(self):
        with self._lock:
            return list(self._blobs.keys())


class SqlStateStorage:
    """``streak_state_blobs`` table via SQLAlchemy Core."""

    def __init__(self, engine):
        self._engine = engine

    def read(self, key: str) -> Optional[str]:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(streak_state_blobs.c.payload).where(streak_state_blobs.c.key == key)
            ).first()
        return row.payload if row else None

    def write(self, key: str, payload: str, schema_version: int) -> None:
        with self._engine.begin() as conn:
            result = conn.execute(
                update(streak_state_blobs)
                .where(streak_state_blobs.c.key == key)
                .values(payload=payload, schema_version=schema_version)
            )
            if result.rowcount == 0:
                conn.execute(
                    insert(streak_state_blobs).values(key=key, payload=payload, schema_version=schema_version)
                )

    def delete(self, key: str) -> None:
        with self._engine.begin() as conn:
            conn.execute(delete(streak_state_blobs).where(streak_state_blobs.c.key == key))


@dataclass(frozen=True)
class LoadResult:
    state: StreakEngineState
    source_version: Optional[int]  # None when nothing usable was stored

    @property
    def migrated(self) -> bool:
        return self.source_version is not None and self.source_version != CURRENT_SCHEMA_VERSION


def default_state(today: date) -> StreakEngineState:
    return StreakEngineState(ledger=StreakLedgerState(), counters=DailyCounters(day_anchor=today))


class StreakStateStore:
    """Loads, upgrades and saves one user's state blob."""

    def __init__(self, storage: StateStorage, key: str, resolver: DayBoundaryResolver, *, user_id: Optional[str] = None):
        self._storage = storage
        self._key = key
        self._resolver = resolver
        self._user_id = user_id

    def load(self, today: date) -> LoadResult:
        try:
            payload = self._storage.read(self._key)
        except Exception as exc:
            streak_persistence_failures_total.inc(labels={"operation": "read"})
            log_event("warning", "streak.state_read_failed", user_id=self._user_id, error_code="storage_read", extra={"error": exc})
            return LoadResult(state=default_state(today), source_version=None)

        blob = decode_blob(payload)
        if blob is None:
            if payload:
                log_event("warning", "streak.state_undecodable", user_id=self._user_id, error_code="decode_failed")
            return LoadResult(state=default_state(today), source_version=None)

        upgraded = upgrade_to_current(blob, self._resolver, today)
        result = LoadResult(state=to_engine_state(upgraded.state), source_version=upgraded.source_version)
        if upgraded.migrated:
            streak_state_migrations_total.inc(labels={"from_version": str(upgraded.source_version)})
            log_event(
                "info",
                "streak.state_migrated",
                user_id=self._user_id,
                extra={"from_version": upgraded.source_version, "to_version": CURRENT_SCHEMA_VERSION},
            )
            self.save(result.state)
        return result

    def save(self, state: StreakEngineState) -> bool:
        try:
            payload = from_engine_state(state).to_json()
            self._storage.write(self._key, payload, CURRENT_SCHEMA_VERSION)
        except Exception as exc:
            streak_persistence_failures_total.inc(labels={"operation": "write"})
            log_event("warning", "streak.state_write_failed", user_id=self._user_id, error_code="storage_write", extra={"error": exc})
            return False
        return True

    def clear(self) -> bool:
        try:
            self._storage.delete(self._key)
        except Exception as exc:
            streak_persistence_failures_total.inc(labels={"operation": "delete"})
            log_event("warning", "streak.state_delete_failed", user_id=self._user_id, error_code="storage_delete", extra={"error": exc})
            return False
        return True
