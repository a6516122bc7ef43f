"""Badge catalog loader."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from schemas import STAT_KINDS, BadgeDefinition, BadgeRequirement

RARITIES: tuple[str, ...] = ("common", "rare", "epic", "legendary")


class BadgeCatalogError(ValueError):
    """Raised when a badge catalog contains invalid data."""


def _badge(
    badge_id: str,
    name: str,
    description: str,
    icon: str,
    rarity: str,
    stat_kind: str,
    threshold: int,
    color: str = "",
) -> BadgeDefinition:
    return BadgeDefinition(
        id=badge_id,
        name=name,
        description=description,
        icon=icon,
        color=color,
        rarity=rarity,
        requirement=BadgeRequirement(stat_kind=stat_kind, threshold=threshold),
    )


# Declaration order is the notification order when several badges unlock at once.
DEFAULT_BADGES: tuple[BadgeDefinition, ...] = (
    _badge("first_lesson", "First Steps", "Complete your first lesson", "🎯", "common", "lessons_completed", 1, "bg-blue-500"),
    _badge("early_bird", "Early Bird", "Complete 5 lessons", "🌅", "common", "lessons_completed", 5, "bg-green-500"),
    _badge("scholar", "Scholar", "Complete 25 lessons", "📚", "rare", "lessons_completed", 25, "bg-purple-500"),
    _badge("master_learner", "Master Learner", "Complete 100 lessons", "🎓", "epic", "lessons_completed", 100, "bg-gold-500"),
    _badge("quiz_master", "Quiz Master", "Pass 10 quizzes", "🧠", "rare", "quizzes_passed", 10, "bg-indigo-500"),
    _badge("perfectionist", "Perfectionist", "Get 5 perfect quiz scores", "💯", "epic", "perfect_scores", 5, "bg-yellow-500"),
    _badge("streak_starter", "Streak Starter", "Maintain a 3-day learning streak", "🔥", "common", "streak_days", 3, "bg-orange-500"),
    _badge("dedicated", "Dedicated Learner", "Maintain a 7-day learning streak", "⚡", "rare", "streak_days", 7, "bg-red-500"),
    _badge(
        "unstoppable",
        "Unstoppable",
        "Maintain a 30-day learning streak",
        "🌟",
        "legendary",
        "streak_days",
        30,
        "bg-gradient-to-r from-purple-500 to-pink-500",
    ),
    _badge("xp_collector", "XP Collector", "Earn 1000 XP", "💎", "rare", "xp_earned", 1000, "bg-cyan-500"),
    # Subject completion.
    _badge("subject_master", "Subject Master", "Complete a whole subject", "🏅", "epic", "subjects_completed", 1, "bg-teal-500"),
    _badge("polymath", "Polymath", "Complete five subjects", "🌍", "legendary", "subjects_completed", 5, "bg-emerald-500"),
)


def _parse_entry(idx: int, entry: Any) -> BadgeDefinition:
    if not isinstance(entry, Mapping):
        raise BadgeCatalogError(f"Entry #{idx} must be a JSON object")

    badge_id = str(entry.get("id") or "").strip()
    if not badge_id:
        raise BadgeCatalogError(f"Entry #{idx} is missing a non-empty 'id'")

    requirement = entry.get("requirement")
    if not isinstance(requirement, Mapping):
        raise BadgeCatalogError(f"Badge {badge_id} must define a 'requirement' object")
    stat_kind = requirement.get("stat_kind")
    if stat_kind not in STAT_KINDS:
        allowed = ", ".join(STAT_KINDS)
        raise BadgeCatalogError(
            f"Badge {badge_id} uses unknown stat kind {stat_kind!r}. Allowed kinds: {allowed}"
        )
    rarity = entry.get("rarity", "common")
    if rarity not in RARITIES:
        raise BadgeCatalogError(f"Badge {badge_id} has unknown rarity {rarity!r}")

    try:
        return BadgeDefinition.model_validate({**entry, "id": badge_id})
    except ValidationError as exc:
        raise BadgeCatalogError(f"Badge {badge_id} is invalid: {exc}") from exc


class BadgeCatalog:
    """Ordered, read-only collection of badge definitions."""

    def __init__(self, badges: Iterable[BadgeDefinition] | None = None) -> None:
        entries = tuple(DEFAULT_BADGES if badges is None else badges)
        if not entries:
            raise BadgeCatalogError("Badge catalog may not be empty")
        seen: set[str] = set()
        for badge in entries:
            if badge.id in seen:
                raise BadgeCatalogError(f"Duplicate badge id detected: {badge.id}")
            seen.add(badge.id)
        self._badges: tuple[BadgeDefinition, ...] = entries
        self._index = {badge.id: badge for badge in entries}

    @classmethod
    def from_path(cls, path: str | Path) -> "BadgeCatalog":
        """Load a catalog from a JSON list of badge objects."""

        path_obj = Path(path)
        if not path_obj.exists():
            raise FileNotFoundError(f"Badge catalog file not found: {path_obj}")
        with path_obj.open("r", encoding="utf-8") as fh:
            try:
                raw = json.load(fh)
            except json.JSONDecodeError as exc:
                raise BadgeCatalogError(f"Badge catalog is not valid JSON: {exc}") from exc
        if not isinstance(raw, list):
            raise BadgeCatalogError("Badge catalog file must contain a JSON list")
        return cls(_parse_entry(idx, entry) for idx, entry in enumerate(raw, start=1))

    @classmethod
    def from_env(cls) -> "BadgeCatalog":
        path = os.getenv("BADGE_CATALOG_PATH")
        if path:
            return cls.from_path(path)
        return cls()

    # ------------------------------------------------------------------
    @property
    def badges(self) -> Sequence[BadgeDefinition]:
        return self._badges

    def ids(self) -> List[str]:
        return [badge.id for badge in self._badges]

    def get(self, badge_id: str) -> Optional[BadgeDefinition]:
        return self._index.get(badge_id)

    def by_stat_kind(self, stat_kind: str) -> List[BadgeDefinition]:
        return [badge for badge in self._badges if badge.requirement.stat_kind == stat_kind]

    def to_payload(self) -> List[dict[str, Any]]:
        return [badge.model_dump() for badge in self._badges]

    def __iter__(self) -> Iterator[BadgeDefinition]:
        return iter(self._badges)

    def __len__(self) -> int:
        return len(self._badges)

    def __contains__(self, badge_id: object) -> bool:
        return badge_id in self._index


BADGE_CATALOG = BadgeCatalog.from_env()
"""Catalog used by the application, loaded once at import."""
