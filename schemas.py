"""Pydantic schemas for progression state, badges and helper utilities."""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Literal, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

__all__ = [
    "MAX_TOTAL_XP",
    "Rarity",
    "StatKind",
    "STAT_KINDS",
    "STAT_FIELDS",
    "BadgeRequirement",
    "BadgeDefinition",
    "BadgeProgress",
    "Achievement",
    "XPEvent",
    "ProgressionStats",
    "ProgressionState",
    "UserLevel",
    "AwardResponse",
    "parse_json_safe",
]

Rarity = Literal["common", "rare", "epic", "legendary"]
StatKind = Literal[
    "lessons_completed",
    "quizzes_passed",
    "streak_days",
    "xp_earned",
    "perfect_scores",
    "subjects_completed",
]

STAT_KINDS: tuple[str, ...] = (
    "lessons_completed",
    "quizzes_passed",
    "streak_days",
    "xp_earned",
    "perfect_scores",
    "subjects_completed",
)

# Largest XP value SQLite can store in an INTEGER column.
MAX_TOTAL_XP = 2**63 - 1

STAT_FIELDS: tuple[str, ...] = (
    "lessons_completed",
    "quizzes_passed",
    "perfect_scores",
    "current_streak",
    "longest_streak",
    "subjects_completed",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BadgeRequirement(BaseModel):
    model_config = ConfigDict(frozen=True)

    stat_kind: StatKind = Field(description="Tracked statistic compared against the threshold.")
    threshold: int = Field(ge=1, description="Minimum value (inclusive) that unlocks the badge.")


class BadgeDefinition(BaseModel):
    """Static badge entry; catalogs hand these out read-only."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ""
    icon: str = ""
    color: str = ""
    rarity: Rarity = "common"
    requirement: BadgeRequirement


class BadgeProgress(BaseModel):
    badge: BadgeDefinition
    earned: bool
    current_value: int = Field(ge=0)
    threshold: int = Field(ge=1)
    progress_percent: float = Field(ge=0.0, le=100.0)


class Achievement(BaseModel):
    id: str
    title: str
    message: str
    badge_id: str | None = Field(
        default=None,
        description="Badge that produced the achievement; absent for level-up events.",
    )
    level: int | None = Field(
        default=None,
        ge=1,
        description="Level reached, only set for level-up achievements.",
    )
    xp_gained: int = Field(default=0, ge=0)
    timestamp: datetime = Field(default_factory=_utcnow)


class XPEvent(BaseModel):
    kind: str = Field(min_length=1)
    xp_gained: int = Field(ge=0, le=MAX_TOTAL_XP)
    detail: Dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=_utcnow)


class ProgressionStats(BaseModel):
    lessons_completed: int = Field(default=0, ge=0)
    quizzes_passed: int = Field(default=0, ge=0)
    perfect_scores: int = Field(default=0, ge=0)
    current_streak: int = Field(default=0, ge=0)
    longest_streak: int = Field(default=0, ge=0)
    subjects_completed: int = Field(default=0, ge=0)


class ProgressionState(BaseModel):
    user_id: str = ""
    total_xp: int = Field(default=0, ge=0, le=MAX_TOTAL_XP)
    earned_badges: List[str] = Field(
        default_factory=list,
        description="Badge ids in unlock order; never shrinks outside an administrative reset.",
    )
    achievements: List[Achievement] = Field(
        default_factory=list,
        description="Append-only log of badge unlocks and level-ups.",
    )
    stats: ProgressionStats = Field(default_factory=ProgressionStats)
    xp_history: List[XPEvent] = Field(default_factory=list)
    last_activity_date: date | None = None
    version: int = Field(default=0, ge=0)
    updated_at: datetime | None = None

    @classmethod
    def default(cls, user_id: str, *, version: int = 0) -> "ProgressionState":
        return cls(user_id=user_id, version=version)


class UserLevel(BaseModel):
    level: int = Field(ge=1)
    current_xp: int = Field(ge=0)
    xp_to_next_level: int = Field(ge=1)
    total_xp: int = Field(ge=0)


class AwardResponse(BaseModel):
    user_id: str
    total_xp: int
    level: UserLevel
    previous_level: int
    leveled_up: bool
    achievements: List[Achievement] = Field(default_factory=list)
    state: ProgressionState


_T = TypeVar("_T", bound=BaseModel)


def _find_first_json_object(text: str) -> tuple[str, int, int]:
    start = text.find("{")
    while start != -1:
        depth = 0
        for idx in range(start, len(text)):
            char = text[idx]
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    candidate = text[start : idx + 1]
                    try:
                        json.loads(candidate)
                    except Exception:
                        break
                    return candidate, start, idx + 1
        start = text.find("{", start + 1)
    raise ValueError("No JSON object found in provided text")


def parse_json_safe(text: str, model: Type[_T]) -> _T:
    """Parse ``text`` into ``model`` with a fallback JSON extraction pass.

    Stored payloads occasionally carry a byte-order mark or log prefix in
    front of the object; anything after the object is rejected.
    """

    first_error: Exception | None = None
    try:
        return model.model_validate_json(text)
    except (ValidationError, ValueError, TypeError) as exc:
        first_error = exc

    try:
        snippet, _, end = _find_first_json_object(text)
    except ValueError:
        if first_error:
            raise first_error
        raise

    trailing = text[end:]
    if trailing.strip():
        if isinstance(first_error, ValidationError):
            raise first_error
        raise ValueError("Trailing content detected after JSON object")

    try:
        return model.model_validate_json(snippet)
    except Exception:
        if first_error:
            raise first_error
        raise
