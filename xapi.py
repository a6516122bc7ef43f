"""Utility helpers for emitting local xAPI statements with optional LRS forwarding.

Badge unlocks, level-ups and recorded learning events are turned into xAPI
statements. Statements are validated against a small local profile before
they are stored in ``xapi_statements`` and, when ``LRS_URL`` is set,
forwarded to an external Learning Record Store in the background with
retry/backoff.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

import requests

import db

if TYPE_CHECKING:
    from engines.progression import AwardResult

LOGGER = logging.getLogger("progression.xapi")

# ---------------------------------------------------------------------------
# xAPI profile definition
# ---------------------------------------------------------------------------

VERB_EARNED = "http://id.tincanapi.com/verb/earned"
VERB_PROGRESSED = "http://adlnet.gov/expapi/verbs/progressed"
VERB_COMPLETED = "http://adlnet.gov/expapi/verbs/completed"
VERB_PASSED = "http://adlnet.gov/expapi/verbs/passed"
VERB_EXPERIENCED = "http://adlnet.gov/expapi/verbs/experienced"

XAPI_PROFILE_VERBS: dict[str, dict[str, str]] = {
    VERB_EARNED: {
        "display": "earned",
        "description": "Learner unlocked a badge.",
    },
    VERB_PROGRESSED: {
        "display": "progressed",
        "description": "Learner reached a new level.",
    },
    VERB_COMPLETED: {
        "display": "completed",
        "description": "Learner completed a lesson or subject.",
    },
    VERB_PASSED: {
        "display": "passed",
        "description": "Learner passed a quiz.",
    },
    VERB_EXPERIENCED: {
        "display": "experienced",
        "description": "Learner took part in a learning activity without a graded outcome.",
    },
}

EVENT_VERBS: dict[str, str] = {
    "lesson_completed": VERB_COMPLETED,
    "subject_completed": VERB_COMPLETED,
    "quiz_passed": VERB_PASSED,
    "quiz_perfect": VERB_PASSED,
    "review_completed": VERB_EXPERIENCED,
    "daily_login": VERB_EXPERIENCED,
}

_ALLOWED_OBJECT_PREFIXES: Sequence[str] = (
    "badge:",
    "level:",
    "activity:",
    "https://",
    "http://",
    "urn:",
)

_ALLOWED_VERB_IDS: tuple[str, ...] = tuple(XAPI_PROFILE_VERBS.keys())
_ALLOWED_OBJECT_PREFIX_TEXT = ", ".join(_ALLOWED_OBJECT_PREFIXES)

_CONTEXT_EXTENSION_SCHEMA: dict[str, type] = {
    "achievement_id": str,
    "badge_id": str,
    "level": int,
    "xp_gained": int,
    "total_xp": int,
    "kind": str,
    "detail": dict,
}

LRS_TIMEOUT_SECONDS = 5.0
LRS_MAX_ATTEMPTS = 3
LRS_BASE_DELAY_SECONDS = 0.5


# ---------------------------------------------------------------------------
# Profile validation
# ---------------------------------------------------------------------------


def _require_text(value: Any, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{label} must be a non-empty string")
    return value.strip()


def _check_actor(actor: Any) -> None:
    if not isinstance(actor, dict):
        raise ValueError("actor must be provided")
    account = actor.get("account")
    if not isinstance(account, dict):
        raise ValueError("actor.account is required")
    account["name"] = _require_text(account.get("name"), "actor.account.name")
    account["homePage"] = _require_text(account.get("homePage"), "actor.account.homePage")


def _check_verb(verb: Any) -> None:
    if not isinstance(verb, dict):
        raise ValueError("verb.id must be provided")
    verb_id = _require_text(verb.get("id"), "verb.id")
    profile = XAPI_PROFILE_VERBS.get(verb_id)
    if profile is None:
        allowed = ", ".join(sorted(_ALLOWED_VERB_IDS))
        raise ValueError(f"Unsupported verb '{verb_id}'. Allowed verbs: {allowed}")
    verb["id"] = verb_id
    verb.setdefault("display", {"en-US": profile["display"]})


def _check_object(obj: Any) -> None:
    if not isinstance(obj, dict):
        raise ValueError("object.id must be provided")
    object_id = _require_text(obj.get("id"), "object.id")
    if not object_id.startswith(tuple(_ALLOWED_OBJECT_PREFIXES)):
        raise ValueError(f"object.id must start with one of: {_ALLOWED_OBJECT_PREFIX_TEXT}")
    obj["id"] = object_id


def _check_result(result: Any) -> None:
    if result is None:
        return
    if not isinstance(result, dict):
        raise ValueError("result must be a dict when provided")
    score = result.get("score")
    if score is not None:
        if not isinstance(score, dict) or "raw" not in score:
            raise ValueError("result.score.raw is required when score is provided")
        score["raw"] = float(score["raw"])
    if "success" in result:
        result["success"] = bool(result["success"])


def _coerce_extension(key: str, value: Any) -> Any:
    expected = _CONTEXT_EXTENSION_SCHEMA[key]
    if expected is int:
        coerced = int(value)
        if coerced < 0:
            raise ValueError(f"{key} extension must be non-negative")
        return coerced
    if expected is dict:
        if not isinstance(value, dict):
            raise ValueError(f"{key} extension must be an object")
        return value
    return str(value)


def _check_context(context: Any) -> Dict[str, Any]:
    context = context or {}
    if not isinstance(context, dict):
        raise ValueError("context must be a dict")
    extensions = context.get("extensions") or {}
    if not isinstance(extensions, dict):
        raise ValueError("context.extensions must be a dict")

    cleaned: Dict[str, Any] = {}
    for key, value in extensions.items():
        if key not in _CONTEXT_EXTENSION_SCHEMA:
            LOGGER.debug("Dropping unsupported xAPI extension: %s", key)
            continue
        if value is not None:
            cleaned[key] = _coerce_extension(key, value)

    context.setdefault("platform", os.getenv("XAPI_PLATFORM", "LearnQuest"))
    context.setdefault("language", os.getenv("XAPI_LANGUAGE", "en"))
    context["extensions"] = cleaned
    return context


def validate_statement(statement: Dict[str, Any]) -> Dict[str, Any]:
    """Validate ``statement`` against the progression profile, normalising it in place."""

    if not isinstance(statement, dict):
        raise ValueError("statement must be a dict")
    _check_actor(statement.get("actor"))
    _check_verb(statement.get("verb"))
    _check_object(statement.get("object"))
    _check_result(statement.get("result"))
    statement["context"] = _check_context(statement.get("context"))
    return statement


# ---------------------------------------------------------------------------
# LRS forwarding
# ---------------------------------------------------------------------------


def _lrs_headers() -> Dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "X-Experience-API-Version": "1.0.3",
    }
    auth = os.getenv("LRS_AUTH")
    if auth:
        headers["Authorization"] = auth
    return headers


async def _forward_statement_with_retry(
    statement: Dict[str, Any],
    *,
    lrs_url: str,
    headers: Dict[str, str],
    timeout: float = LRS_TIMEOUT_SECONDS,
    max_attempts: int = LRS_MAX_ATTEMPTS,
) -> bool:
    """POST ``statement`` to the LRS, doubling the delay after each failed attempt.

    Client errors (4xx) are final; server errors and transport failures are
    retried. Returns whether the LRS accepted the statement.
    """

    delay = LRS_BASE_DELAY_SECONDS
    for attempt in range(1, max_attempts + 1):
        try:
            response = await asyncio.to_thread(
                requests.post, lrs_url, json=statement, headers=headers, timeout=timeout
            )
        except requests.RequestException as exc:
            LOGGER.warning("LRS forward attempt %s/%s failed: %s", attempt, max_attempts, exc)
        else:
            if response.status_code < 400:
                return True
            if response.status_code < 500:
                LOGGER.warning("LRS rejected statement with status %s", response.status_code)
                return False
            LOGGER.warning(
                "LRS forward attempt %s/%s got status %s", attempt, max_attempts, response.status_code
            )
        if attempt < max_attempts:
            await asyncio.sleep(delay)
            delay *= 2
    LOGGER.error("Giving up forwarding xAPI statement for %s", statement["object"]["id"])
    return False


def _schedule_forward(statement: Dict[str, Any], *, lrs_url: str, headers: Dict[str, str]) -> None:
    coro = _forward_statement_with_retry(statement, lrs_url=lrs_url, headers=headers)
    try:
        asyncio.get_running_loop().create_task(coro)
    except RuntimeError:
        # Sync callers (route handlers run in a worker thread) have no loop.
        threading.Thread(target=asyncio.run, args=(coro,), daemon=True).start()


# ---------------------------------------------------------------------------
# Statement construction and storage
# ---------------------------------------------------------------------------


def build_statement(
    user_id: str,
    verb: str,
    object_id: str,
    *,
    score: Optional[float] = None,
    success: Optional[bool] = None,
    context: Optional[Dict[str, Any]] = None,
    timestamp: Optional[datetime] = None,
) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    if score is not None:
        result["score"] = {"raw": score}
    if success is not None:
        result["success"] = success
    statement: Dict[str, Any] = {
        "actor": {
            "account": {
                "homePage": os.getenv("APP_BASE_URL", "https://local.learning"),
                "name": user_id,
            }
        },
        "verb": {"id": verb},
        "object": {"id": object_id},
        "timestamp": (timestamp or datetime.now(timezone.utc)).isoformat(),
        "context": {"extensions": dict(context or {})},
    }
    if result:
        statement["result"] = result
    return validate_statement(statement)


def _store_statement(user_id: str, statement: Dict[str, Any]) -> None:
    result = statement.get("result") or {}
    score = result.get("score")
    success = result.get("success")
    extensions = statement["context"]["extensions"]
    db._exec(
        """
        INSERT INTO xapi_statements(user_id, verb, object_id, score, success, context)
        VALUES (?,?,?,?,?,?)
        """,
        (
            user_id,
            statement["verb"]["id"],
            statement["object"]["id"],
            score["raw"] if score else None,
            None if success is None else int(success),
            json.dumps(extensions, ensure_ascii=False, separators=(",", ":")) if extensions else None,
        ),
    )


def emit(
    user_id: str,
    verb: str,
    object_id: str,
    *,
    score: Optional[float] = None,
    success: Optional[bool] = None,
    context: Optional[Dict[str, Any]] = None,
    timestamp: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Persist the xAPI statement locally and forward to an LRS when configured."""

    statement = build_statement(
        user_id,
        verb,
        object_id,
        score=score,
        success=success,
        context=context,
        timestamp=timestamp,
    )
    _store_statement(user_id, statement)

    lrs_url = os.getenv("LRS_URL")
    if lrs_url:
        _schedule_forward(statement, lrs_url=lrs_url, headers=_lrs_headers())
    return statement


def emit_award(user_id: str, result: "AwardResult", *, event_kind: Optional[str] = None) -> List[Dict[str, Any]]:
    """Emit statements for a recorded event and every achievement of ``result``."""

    statements: List[Dict[str, Any]] = []
    total_xp = result.state.total_xp

    verb = EVENT_VERBS.get(event_kind or "")
    if verb is not None:
        latest = result.state.xp_history[-1] if result.state.xp_history else None
        statements.append(
            emit(
                user_id,
                verb,
                f"activity:{event_kind}",
                success=True if verb == VERB_PASSED else None,
                context={
                    "kind": event_kind,
                    "xp_gained": latest.xp_gained if latest else 0,
                    "total_xp": total_xp,
                    "detail": latest.detail if latest else None,
                },
            )
        )

    for achievement in result.achievements:
        if achievement.badge_id:
            verb, object_id = VERB_EARNED, f"badge:{achievement.badge_id}"
        elif achievement.level is not None:
            verb, object_id = VERB_PROGRESSED, f"level:{achievement.level}"
        else:
            continue
        statements.append(
            emit(
                user_id,
                verb,
                object_id,
                context={
                    "achievement_id": achievement.id,
                    "badge_id": achievement.badge_id,
                    "level": achievement.level,
                    "xp_gained": achievement.xp_gained,
                    "total_xp": total_xp,
                },
                timestamp=achievement.timestamp,
            )
        )
    return statements
