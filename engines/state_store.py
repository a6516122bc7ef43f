"""Persistence backends for :class:`engines.progression.ProgressionEngine`."""

from __future__ import annotations

import copy
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import db
from engines.base import BaseStateStore, ConcurrentUpdateError, StateStoreError
from engines.level import calculate_level

_LOGGER = logging.getLogger(__name__)


class InMemoryProgressionStore(BaseStateStore):
    """Dictionary-backed store used by tests and embedded callers."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def read(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(user_id)
            return copy.deepcopy(record) if record is not None else None

    def write(self, user_id: str, payload: Dict[str, Any], expected_version: int) -> int:
        with self._lock:
            current = self._records.get(user_id)
            current_version = int(current.get("version", 0)) if current else 0
            if current_version != expected_version:
                raise ConcurrentUpdateError(
                    f"stale write for {user_id}: expected version {expected_version}, found {current_version}"
                )
            new_version = expected_version + 1
            stored = copy.deepcopy(payload)
            stored["version"] = new_version
            stored["updated_at"] = datetime.now(timezone.utc).isoformat()
            self._records[user_id] = stored
            return new_version

    def delete(self, user_id: str) -> None:
        with self._lock:
            self._records.pop(user_id, None)


class SQLiteProgressionStore(BaseStateStore):
    """Store backed by the ``progression_state`` table in :mod:`db`."""

    def read(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            return db.get_progression_state(user_id)
        except sqlite3.Error as exc:
            raise StateStoreError(f"failed to read progression state for {user_id}: {exc}") from exc

    def write(self, user_id: str, payload: Dict[str, Any], expected_version: int) -> int:
        total_xp = int(payload.get("total_xp", 0))
        try:
            new_version = db.save_progression_state(
                user_id,
                payload,
                expected_version,
                total_xp=total_xp,
                level=calculate_level(total_xp).level,
            )
        except (sqlite3.Error, OverflowError) as exc:
            raise StateStoreError(f"failed to write progression state for {user_id}: {exc}") from exc
        if new_version is None:
            _LOGGER.warning("Version conflict writing progression state for %s (expected %s)", user_id, expected_version)
            raise ConcurrentUpdateError(f"stale write for {user_id}: expected version {expected_version}")
        return new_version
