import json
import os
import sqlite3
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from pydantic import ValidationError

from db_pool import SQLiteConnectionPool
from schemas import ProgressionState, parse_json_safe

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS progression_state (
              user_id     TEXT PRIMARY KEY,
              state_json  TEXT NOT NULL,
              total_xp    INTEGER NOT NULL DEFAULT 0,
              level       INTEGER NOT NULL DEFAULT 1,
              version     INTEGER NOT NULL DEFAULT 0,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_progression_total_xp ON progression_state(total_xp DESC);

            CREATE TABLE IF NOT EXISTS xapi_statements (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id     TEXT NOT NULL,
              verb        TEXT NOT NULL,
              object_id   TEXT NOT NULL,
              score       REAL,
              success     INTEGER,
              response    TEXT,
              context     TEXT,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_xapi_statements_user ON xapi_statements(user_id, created_at DESC);
            """
        )
        con.commit()


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, set):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, default=_json_default)


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    value = value.strip()
    if not value:
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


# -------------- progression state --------------
def get_progression_state(user_id: str) -> Optional[Dict[str, Any]]:
    """Return the stored payload for ``user_id`` with its row version.

    Rows whose JSON cannot be decoded come back as ``{"version": n,
    "_malformed": True}`` so callers can fall back to a default and still
    overwrite the row.
    """
    rows = _query(
        "SELECT state_json, version FROM progression_state WHERE user_id = ?",
        (user_id,),
    )
    if not rows:
        return None
    row = rows[0]
    state = _decode_json_field(row["state_json"])
    if isinstance(state, str) and state:
        # Prefixed or BOM-tainted rows written by older tooling.
        try:
            state = parse_json_safe(state, ProgressionState).model_dump(mode="json")
        except (ValidationError, ValueError):
            state = None
    if not isinstance(state, dict):
        return {"version": int(row["version"]), "_malformed": True}
    return {**state, "version": int(row["version"])}


def save_progression_state(
    user_id: str,
    state: Dict[str, Any],
    expected_version: int,
    *,
    total_xp: int,
    level: int,
) -> Optional[int]:
    """Compare-and-set write; returns the new version or ``None`` on a stale version."""
    payload = {k: v for k, v in state.items() if k != "version"}
    new_version = int(expected_version) + 1
    with _conn() as con:
        if expected_version == 0:
            cur = con.execute(
                """
                INSERT INTO progression_state(user_id, state_json, total_xp, level, version, updated_at)
                VALUES (?,?,?,?,?,CURRENT_TIMESTAMP)
                ON CONFLICT(user_id) DO NOTHING
                """,
                (user_id, json_dumps(payload), int(total_xp), int(level), new_version),
            )
        else:
            cur = con.execute(
                """
                UPDATE progression_state
                   SET state_json = ?, total_xp = ?, level = ?, version = ?, updated_at = CURRENT_TIMESTAMP
                 WHERE user_id = ? AND version = ?
                """,
                (json_dumps(payload), int(total_xp), int(level), new_version, user_id, int(expected_version)),
            )
        if cur.rowcount != 1:
            con.rollback()
            return None
        con.commit()
    return new_version


def delete_progression_state(user_id: str) -> int:
    cur = _exec("DELETE FROM progression_state WHERE user_id = ?", (user_id,))
    return int(cur.rowcount or 0)


def list_leaderboard(limit: int = 10) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT user_id, total_xp, level, updated_at
          FROM progression_state
         ORDER BY total_xp DESC, updated_at ASC, user_id ASC
         LIMIT ?
        """,
        (int(limit),),
    )
    board: list[Dict[str, Any]] = []
    for rank, row in enumerate(rows, start=1):
        entry = dict(row)
        entry["rank"] = rank
        board.append(entry)
    return board


# -------------- xAPI --------------
def list_xapi_statements(user_id: Optional[str] = None, limit: int = 100) -> list[Dict[str, Any]]:
    if user_id:
        rows = _query(
            "SELECT id, user_id, verb, object_id, score, success, response, context, created_at "
            "FROM xapi_statements WHERE user_id = ? ORDER BY id DESC LIMIT ?",
            (user_id, int(limit)),
        )
    else:
        rows = _query(
            "SELECT id, user_id, verb, object_id, score, success, response, context, created_at "
            "FROM xapi_statements ORDER BY id DESC LIMIT ?",
            (int(limit),),
        )
    statements: list[Dict[str, Any]] = []
    for row in rows:
        entry = dict(row)
        entry["context"] = _decode_json_field(entry.get("context"))
        statements.append(entry)
    return statements
