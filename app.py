# app.py — LearnQuest progression service v1.0.0
# - XP, levels, badges and achievements persisted in SQLite
# - xAPI statements for learning events, badge unlocks and level-ups
# - Administrative reset guarded by PROGRESSION_ADMIN_TOKEN

import hmac
import json
import logging
import os
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field

import db, xapi
from badges import BADGE_CATALOG
from engines.base import PersistenceError, ProgressionError
from engines.level import calculate_level
from engines.progression import DEFAULT_RECENT_ACHIEVEMENTS, AwardResult, ProgressionEngine
from engines.state_store import SQLiteProgressionStore
from env_validation import get_env_bool
from schemas import (
    MAX_TOTAL_XP,
    Achievement,
    AwardResponse,
    BadgeDefinition,
    BadgeProgress,
    ProgressionState,
    UserLevel,
)

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        db.init()
        logger.info("Progression service ready: %s badges, db=%s", len(BADGE_CATALOG), db.DB_PATH)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="LearnQuest Progression", version=APP_VERSION, lifespan=_lifespan)

PROGRESSION_ENGINE = ProgressionEngine(store=SQLiteProgressionStore(), catalog=BADGE_CATALOG)

_ADMIN_PATHS = frozenset({"/progress/reset"})


def _normalize_path(path: str) -> str:
    if not path or path == "/":
        return "/"
    return path.rstrip("/")


def _extract_token(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    candidate = header_value.strip()
    if not candidate:
        return None
    if " " in candidate:
        prefix, token = candidate.split(" ", 1)
        if prefix.lower() in {"bearer", "token"}:
            candidate = token.strip()
    return candidate or None


def _is_admin(request: Request) -> bool:
    expected = os.getenv("PROGRESSION_ADMIN_TOKEN")
    if not expected:
        return False
    for supplied in (
        request.headers.get("x-admin-token"),
        _extract_token(request.headers.get("authorization")),
    ):
        if supplied and hmac.compare_digest(supplied.strip().encode(), expected.encode()):
            return True
    return False


@app.middleware("http")
async def _enforce_admin_token(request: Request, call_next):
    if _normalize_path(request.url.path) in _ADMIN_PATHS and not _is_admin(request):
        return Response(
            status_code=401,
            content=json.dumps({"detail": "missing or invalid admin token"}),
            media_type="application/json",
        )
    return await call_next(request)


# ---------- Helpers ----------
def _require_user(user_id: Optional[str]) -> str:
    if not user_id or not user_id.strip():
        raise HTTPException(status_code=400, detail="user_id required")
    return user_id.strip()


def _award_response(user_id: str, result: AwardResult) -> AwardResponse:
    return AwardResponse(
        user_id=user_id,
        total_xp=result.state.total_xp,
        level=result.level,
        previous_level=result.previous_level,
        leveled_up=result.leveled_up,
        achievements=result.achievements,
        state=result.state,
    )


def _persistence_failure(user_id: str, exc: PersistenceError) -> HTTPException:
    logger.error("Progression write failed for %s: %s", user_id, exc)
    computed: Any = None
    if isinstance(exc.result, AwardResult):
        computed = _award_response(user_id, exc.result).model_dump(mode="json")
    elif isinstance(exc.result, ProgressionState):
        computed = exc.result.model_dump(mode="json")
    return HTTPException(
        status_code=503,
        detail={"message": "progression state could not be saved", "result": computed},
    )


def _emit_statements(user_id: str, result: AwardResult, event_kind: Optional[str] = None) -> None:
    if not get_env_bool("ENABLE_XAPI_ACHIEVEMENTS", True):
        return
    try:
        xapi.emit_award(user_id, result, event_kind=event_kind)
    except (ValueError, sqlite3.Error) as exc:
        logger.warning("Failed to record xAPI statements for %s: %s", user_id, exc)


# ---------- Schemas ----------
class AwardBody(BaseModel):
    user_id: str
    kind: str
    xp_gained: int = Field(le=MAX_TOTAL_XP)
    detail: Optional[dict[str, Any]] = None


class StatsBody(BaseModel):
    user_id: str
    stats: dict[str, Any]


class EventBody(BaseModel):
    user_id: str
    kind: str
    xp_gained: Optional[int] = Field(default=None, le=MAX_TOTAL_XP)
    detail: Optional[dict[str, Any]] = None
    occurred_at: Optional[datetime] = None


class ResetBody(BaseModel):
    user_id: str


# ---------- Catalog / levels ----------
@app.get("/")
def index():
    return {
        "service": "LearnQuest Progression",
        "version": APP_VERSION,
        "badges": len(BADGE_CATALOG),
    }


@app.get("/badges", response_model=list[BadgeDefinition])
def list_badges():
    return list(BADGE_CATALOG)


@app.get("/levels/preview", response_model=UserLevel)
def preview_level(total_xp: int = Query(le=MAX_TOTAL_XP)):
    try:
        return calculate_level(total_xp)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


# ---------- Progress ----------
@app.get("/progress/state", response_model=ProgressionState)
def progress_state(user_id: str):
    return PROGRESSION_ENGINE.get_state(_require_user(user_id))


@app.get("/progress/level", response_model=UserLevel)
def progress_level(user_id: str):
    return PROGRESSION_ENGINE.get_level(_require_user(user_id))


@app.get("/progress/badges", response_model=list[BadgeProgress])
def progress_badges(user_id: str):
    return PROGRESSION_ENGINE.get_badge_progress(_require_user(user_id))


@app.get("/progress/achievements", response_model=list[Achievement])
def progress_achievements(user_id: str, limit: int = DEFAULT_RECENT_ACHIEVEMENTS):
    if limit < 0:
        raise HTTPException(status_code=400, detail="limit must be non-negative")
    return PROGRESSION_ENGINE.list_achievements(_require_user(user_id), limit=limit)


@app.post("/progress/award", response_model=AwardResponse)
def progress_award(body: AwardBody):
    user_id = _require_user(body.user_id)
    try:
        result = PROGRESSION_ENGINE.award_xp(user_id, body.kind, body.xp_gained, body.detail)
    except PersistenceError as exc:
        raise _persistence_failure(user_id, exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    _emit_statements(user_id, result)
    return _award_response(user_id, result)


@app.post("/progress/stats", response_model=ProgressionState)
def progress_stats(body: StatsBody):
    user_id = _require_user(body.user_id)
    try:
        return PROGRESSION_ENGINE.update_stats(user_id, body.stats)
    except PersistenceError as exc:
        raise _persistence_failure(user_id, exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/progress/event", response_model=AwardResponse)
def progress_event(body: EventBody):
    user_id = _require_user(body.user_id)
    try:
        result = PROGRESSION_ENGINE.record_event(
            user_id,
            body.kind,
            xp_gained=body.xp_gained,
            detail=body.detail,
            occurred_at=body.occurred_at,
        )
    except PersistenceError as exc:
        raise _persistence_failure(user_id, exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    _emit_statements(user_id, result, event_kind=body.kind)
    return _award_response(user_id, result)


@app.post("/progress/reset", response_model=ProgressionState)
def progress_reset(body: ResetBody):
    user_id = _require_user(body.user_id)
    try:
        return PROGRESSION_ENGINE.reset(user_id)
    except PersistenceError as exc:
        raise _persistence_failure(user_id, exc) from exc
    except ProgressionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/progress/leaderboard")
def progress_leaderboard(limit: int = 10):
    if not 1 <= limit <= 100:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 100")
    return db.list_leaderboard(limit)


@app.get("/xapi/statements")
def xapi_statements(user_id: Optional[str] = None, limit: int = 100):
    return db.list_xapi_statements(user_id, limit)
