"""Test cases for db operations."""

import json
import sqlite3
import threading

import pytest

import db
from db_pool import SQLiteConnectionPool


@pytest.mark.usefixtures("temp_db")
def test_progression_state_compare_and_set():
    """A row is created at version 1 and only updated from the version it was read at."""
    assert db.get_progression_state("alice") is None

    version = db.save_progression_state("alice", {"total_xp": 10, "version": 0}, 0, total_xp=10, level=1)
    assert version == 1

    # A second insert for the same user loses the race.
    assert db.save_progression_state("alice", {"total_xp": 99}, 0, total_xp=99, level=1) is None

    stored = db.get_progression_state("alice")
    assert stored == {"total_xp": 10, "version": 1}

    with db._conn() as con:
        raw = con.execute("SELECT state_json FROM progression_state WHERE user_id = ?", ["alice"]).fetchone()
    assert "version" not in json.loads(raw["state_json"])

    assert db.save_progression_state("alice", {"total_xp": 150}, 1, total_xp=150, level=2) == 2
    assert db.save_progression_state("alice", {"total_xp": 200}, 1, total_xp=200, level=2) is None
    assert db.get_progression_state("alice")["total_xp"] == 150


@pytest.mark.usefixtures("temp_db")
def test_delete_progression_state():
    db.save_progression_state("bob", {"total_xp": 5}, 0, total_xp=5, level=1)
    assert db.delete_progression_state("bob") == 1
    assert db.delete_progression_state("bob") == 0
    assert db.get_progression_state("bob") is None


@pytest.mark.usefixtures("temp_db")
def test_leaderboard_ranks_by_total_xp():
    for user_id, total_xp, level in (("ann", 120, 2), ("ben", 900, 4), ("cat", 40, 1)):
        db.save_progression_state(user_id, {"total_xp": total_xp}, 0, total_xp=total_xp, level=level)

    board = db.list_leaderboard(2)
    assert [(row["rank"], row["user_id"], row["total_xp"], row["level"]) for row in board] == [
        (1, "ben", 900, 4),
        (2, "ann", 120, 2),
    ]


@pytest.mark.usefixtures("temp_db")
def test_xapi_statement_listing_decodes_context():
    db._exec(
        "INSERT INTO xapi_statements(user_id, verb, object_id, context) VALUES (?,?,?,?)",
        ("ann", "http://id.tincanapi.com/verb/earned", "badge:first_lesson", json.dumps({"badge_id": "first_lesson"})),
    )
    db._exec(
        "INSERT INTO xapi_statements(user_id, verb, object_id, context) VALUES (?,?,?,?)",
        ("ben", "http://id.tincanapi.com/verb/earned", "badge:quiz_master", None),
    )

    mine = db.list_xapi_statements("ann")
    assert len(mine) == 1
    assert mine[0]["context"] == {"badge_id": "first_lesson"}
    assert len(db.list_xapi_statements()) == 2


def test_json_dumps_handles_dates_and_sets():
    from datetime import date

    payload = json.loads(db.json_dumps({"day": date(2024, 3, 1), "ids": {"b", "a"}}))
    assert payload == {"day": "2024-03-01", "ids": ["a", "b"]}


def test_pool_reuses_and_bounds_connections(tmp_path):
    pool = SQLiteConnectionPool(str(tmp_path / "pool.db"), max_connections=2, timeout=2.0)
    with pool.get_connection() as first:
        first.execute("CREATE TABLE t (x INTEGER)")
        first.commit()
    with pool.get_connection() as again:
        assert again is first

    results = []

    def borrow():
        with pool.get_connection() as con:
            results.append(con.execute("SELECT COUNT(*) FROM t").fetchone()[0])

    threads = [threading.Thread(target=borrow) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results == [0, 0, 0, 0]
    assert len(pool._all) <= 2
    pool.close_all()
    assert pool._all == []


def test_pool_rejects_non_positive_size(tmp_path):
    with pytest.raises(ValueError):
        SQLiteConnectionPool(str(tmp_path / "pool.db"), max_connections=0)


def test_pool_timeout_raises_operational_error(tmp_path):
    pool = SQLiteConnectionPool(str(tmp_path / "pool.db"), max_connections=1, timeout=0.05)
    with pool.get_connection():
        with pytest.raises(sqlite3.OperationalError):
            with pool.get_connection():
                pass
    with pool.get_connection() as con:
        assert con.execute("SELECT 1").fetchone()[0] == 1
    pool.close_all()
