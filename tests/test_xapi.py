import threading

import pytest

import db
import xapi
from badges import BadgeCatalog
from engines.progression import ProgressionEngine
from engines.state_store import InMemoryProgressionStore


@pytest.mark.usefixtures("temp_db")
def test_xapi_emit_persists_and_calls_lrs(monkeypatch):
    event = threading.Event()
    calls = []

    async def fake_forward(statement, *, lrs_url, headers, timeout=5.0, max_attempts=3):
        calls.append((lrs_url, statement, headers, timeout, max_attempts))
        event.set()

    monkeypatch.setattr(xapi, "_forward_statement_with_retry", fake_forward)
    monkeypatch.setenv("LRS_URL", "https://example.com/xapi")
    monkeypatch.setenv("LRS_AUTH", "Token abc")

    xapi.emit(
        user_id="alice",
        verb=xapi.VERB_PASSED,
        object_id="activity:quiz_passed",
        score=0.75,
        success=True,
        context={"kind": "quiz_passed", "xp_gained": 30, "unknown": "dropped"},
    )

    rows = db._query("SELECT user_id, verb, object_id, score, success, context FROM xapi_statements")
    assert len(rows) == 1
    stored = dict(rows[0])
    assert stored["user_id"] == "alice"
    assert stored["verb"].endswith("passed")
    assert pytest.approx(stored["score"], rel=1e-6) == 0.75
    assert stored["success"] == 1

    event.wait(0.5)
    assert calls
    url, payload, headers, timeout, attempts = calls[0]
    assert url == "https://example.com/xapi"
    assert headers["Authorization"] == "Token abc"
    assert headers["X-Experience-API-Version"] == "1.0.3"
    assert timeout == 5.0
    assert attempts == 3
    assert payload["context"]["extensions"] == {"kind": "quiz_passed", "xp_gained": 30}


@pytest.mark.usefixtures("temp_db")
def test_validate_statement_rejects_unknown_verb(monkeypatch):
    monkeypatch.setenv("APP_BASE_URL", "https://local")
    statement = {
        "actor": {"account": {"homePage": "https://local", "name": "bob"}},
        "verb": {"id": "https://example.com/verbs/custom"},
        "object": {"id": "activity:xyz"},
        "context": {"extensions": {}},
    }
    with pytest.raises(ValueError):
        xapi.validate_statement(statement)


@pytest.mark.parametrize(
    "object_id, extensions",
    [
        ("ftp://badge", {}),
        ("badge:first_lesson", {"xp_gained": -1}),
        ("badge:first_lesson", {"detail": "not-a-dict"}),
    ],
)
def test_validate_statement_rejects_bad_objects_and_extensions(object_id, extensions):
    statement = {
        "actor": {"account": {"homePage": "https://local", "name": "bob"}},
        "verb": {"id": xapi.VERB_EARNED},
        "object": {"id": object_id},
        "context": {"extensions": extensions},
    }
    with pytest.raises(ValueError):
        xapi.validate_statement(statement)


def test_build_statement_fills_profile_defaults(monkeypatch):
    monkeypatch.setenv("APP_BASE_URL", "https://learn.example")
    monkeypatch.delenv("XAPI_PLATFORM", raising=False)
    statement = xapi.build_statement("carol", xapi.VERB_PROGRESSED, "level:3", context={"level": "3"})

    assert statement["actor"]["account"] == {"homePage": "https://learn.example", "name": "carol"}
    assert statement["verb"]["display"] == {"en-US": "progressed"}
    assert statement["context"]["platform"] == "LearnQuest"
    assert statement["context"]["extensions"] == {"level": 3}
    assert "result" not in statement


@pytest.mark.usefixtures("temp_db")
def test_emit_award_covers_event_badges_and_level(monkeypatch):
    monkeypatch.delenv("LRS_URL", raising=False)
    engine = ProgressionEngine(InMemoryProgressionStore(), BadgeCatalog())
    engine.update_stats("dave", {"quizzes_passed": 9})
    result = engine.record_event("dave", "quiz_passed", xp_gained=100)

    statements = xapi.emit_award("dave", result, event_kind="quiz_passed")

    assert [s["object"]["id"] for s in statements] == [
        "activity:quiz_passed",
        "badge:quiz_master",
        "level:2",
    ]
    assert statements[0]["result"] == {"success": True}
    assert statements[1]["verb"]["id"] == xapi.VERB_EARNED
    assert statements[2]["verb"]["id"] == xapi.VERB_PROGRESSED

    stored = db.list_xapi_statements("dave")
    assert len(stored) == 3
    assert stored[0]["object_id"] == "level:2"
    assert stored[0]["context"]["level"] == 2


@pytest.mark.usefixtures("temp_db")
def test_emit_award_skips_unknown_event_kinds(monkeypatch):
    monkeypatch.delenv("LRS_URL", raising=False)
    engine = ProgressionEngine(InMemoryProgressionStore(), BadgeCatalog())
    result = engine.award_xp("erin", "bonus", 10)

    assert xapi.emit_award("erin", result, event_kind="bonus") == []
    assert db.list_xapi_statements("erin") == []
