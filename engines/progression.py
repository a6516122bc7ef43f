"""Learner progression engine: XP, levels, badges and achievements.

The engine owns one :class:`~schemas.ProgressionState` per learner. Every
mutation is a read-modify-write cycle against an injected store: the state
is read, a pure function computes the next state on a copy, and the full
result is written back with the version it was based on. Cycles for the same
learner are serialised by a per-user lock, and stale writes from other
processes are retried.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, TypeVar
from uuid import uuid4

from pydantic import ValidationError

from badges import BADGE_CATALOG, BadgeCatalog
from engines.badge_evaluator import evaluate_badges, progress_report, reward_for_rarity
from engines.base import (
    BaseStateStore,
    ConcurrentUpdateError,
    InvalidAwardError,
    InvalidStatValueError,
    PersistenceError,
    StateStoreError,
    UnknownStatError,
)
from engines.level import calculate_level
from engines.state_store import InMemoryProgressionStore
from env_validation import get_env_int
from schemas import (
    MAX_TOTAL_XP,
    STAT_FIELDS,
    Achievement,
    BadgeProgress,
    ProgressionState,
    ProgressionStats,
    UserLevel,
    XPEvent,
)

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")

DEFAULT_XP_HISTORY_LIMIT = 200
DEFAULT_MAX_WRITE_RETRIES = 3
DEFAULT_RECENT_ACHIEVEMENTS = 5


@dataclass(frozen=True)
class EventRule:
    """Stat increments and default XP for a recorded learning event."""

    xp: int
    increments: Mapping[str, int] = field(default_factory=dict)


EVENT_RULES: Dict[str, EventRule] = {
    "lesson_completed": EventRule(xp=20, increments={"lessons_completed": 1}),
    "quiz_passed": EventRule(xp=30, increments={"quizzes_passed": 1}),
    "quiz_perfect": EventRule(xp=50, increments={"quizzes_passed": 1, "perfect_scores": 1}),
    "subject_completed": EventRule(xp=100, increments={"subjects_completed": 1}),
    "review_completed": EventRule(xp=0),
    "daily_login": EventRule(xp=5),
}


@dataclass
class _UserLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


@dataclass
class AwardResult:
    """Outcome of an XP award."""

    state: ProgressionState
    achievements: List[Achievement]
    leveled_up: bool
    previous_level: int
    level: UserLevel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _log_json(event: str, payload: Dict[str, Any]) -> None:
    """Emit one structured JSON log line per progression event."""

    record = {"event": event, **payload}
    try:
        message = json.dumps(record, ensure_ascii=False, sort_keys=True, default=str)
    except (TypeError, ValueError):
        message = json.dumps({"event": event, "payload_repr": repr(payload)}, sort_keys=True)
    _LOGGER.info(message)


def _achievement_id(prefix: str, moment: datetime) -> str:
    # Millisecond stamp plus a random suffix keeps ids unique for bursts.
    return f"{prefix}-{int(moment.timestamp() * 1000)}-{uuid4().hex[:8]}"


# ----- pure state transitions ---------------------------------------------
def apply_award(
    state: ProgressionState,
    event: XPEvent,
    *,
    catalog: Optional[BadgeCatalog] = None,
    now: Optional[datetime] = None,
    history_limit: int = DEFAULT_XP_HISTORY_LIMIT,
) -> AwardResult:
    """Apply ``event`` to a copy of ``state`` and return the outcome.

    One badge evaluation pass runs per call: reward XP from badges unlocked
    here is added to ``total_xp`` but does not unlock further badges until the
    next award. ``leveled_up`` compares the level before the award with the
    level after the event's own XP.
    """

    now = now or _utcnow()
    updated = state.model_copy(deep=True)

    previous = calculate_level(updated.total_xp)
    if updated.total_xp + event.xp_gained > MAX_TOTAL_XP:
        raise InvalidAwardError(f"total_xp may not exceed {MAX_TOTAL_XP}")
    updated.total_xp += event.xp_gained
    updated.xp_history.append(event)
    if history_limit > 0 and len(updated.xp_history) > history_limit:
        updated.xp_history = updated.xp_history[-history_limit:]

    reached = calculate_level(updated.total_xp)
    leveled_up = reached.level > previous.level

    emitted: List[Achievement] = []
    for badge in evaluate_badges(updated.stats, updated.total_xp, updated.earned_badges, catalog):
        reward = reward_for_rarity(badge.rarity)
        updated.earned_badges.append(badge.id)
        achievement = Achievement(
            id=_achievement_id(badge.id, now),
            title=f"Badge unlocked: {badge.name}",
            message=badge.description or f"You earned the {badge.name} badge.",
            badge_id=badge.id,
            xp_gained=reward,
            timestamp=now,
        )
        updated.achievements.append(achievement)
        emitted.append(achievement)
        updated.total_xp = min(updated.total_xp + reward, MAX_TOTAL_XP)

    if leveled_up:
        achievement = Achievement(
            id=_achievement_id(f"level-{reached.level}", now),
            title="Level Up!",
            message=f"You reached level {reached.level}.",
            level=reached.level,
            xp_gained=0,
            timestamp=now,
        )
        updated.achievements.append(achievement)
        emitted.append(achievement)

    updated.updated_at = now
    return AwardResult(
        state=updated,
        achievements=emitted,
        leveled_up=leveled_up,
        previous_level=previous.level,
        level=calculate_level(updated.total_xp),
    )


def validate_stat_update(partial_stats: Mapping[str, Any]) -> Dict[str, int]:
    if not isinstance(partial_stats, Mapping):
        raise InvalidStatValueError("stats must be a mapping of counter names to integers")
    cleaned: Dict[str, int] = {}
    for name, value in partial_stats.items():
        if name not in STAT_FIELDS:
            allowed = ", ".join(STAT_FIELDS)
            raise UnknownStatError(f"Unknown stat '{name}'. Allowed stats: {allowed}")
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidStatValueError(f"{name} must be an integer, got {value!r}")
        if value < 0:
            raise InvalidStatValueError(f"{name} must be non-negative, got {value}")
        cleaned[name] = value
    return cleaned


def merge_stats(state: ProgressionState, partial_stats: Mapping[str, Any]) -> ProgressionState:
    """Shallow-merge counters into a copy of ``state``; nothing is evaluated."""

    cleaned = validate_stat_update(partial_stats)
    updated = state.model_copy(deep=True)
    updated.stats = ProgressionStats(**{**updated.stats.model_dump(), **cleaned})
    return updated


def advance_streak(state: ProgressionState, day: date) -> None:
    """Update the daily streak of ``state`` in place for activity on ``day``."""

    last = state.last_activity_date
    stats = state.stats
    if last is not None and day <= last:
        return
    if last is not None and day == last + timedelta(days=1):
        stats.current_streak += 1
    else:
        stats.current_streak = 1
    stats.longest_streak = max(stats.longest_streak, stats.current_streak)
    state.last_activity_date = day


def _validate_user_id(user_id: str) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise InvalidAwardError("user_id must be a non-empty string")
    return user_id.strip()


def build_event(
    kind: str,
    xp_gained: Any,
    detail: Optional[Mapping[str, Any]] = None,
    *,
    timestamp: Optional[datetime] = None,
) -> XPEvent:
    """Validate raw award input and return the XP event it describes."""

    if not isinstance(kind, str) or not kind.strip():
        raise InvalidAwardError("kind must be a non-empty string")
    if isinstance(xp_gained, bool) or not isinstance(xp_gained, int):
        raise InvalidAwardError(f"xp_gained must be an integer, got {xp_gained!r}")
    if xp_gained < 0:
        raise InvalidAwardError(f"xp_gained must be non-negative, got {xp_gained}")
    if xp_gained > MAX_TOTAL_XP:
        raise InvalidAwardError(f"xp_gained may not exceed {MAX_TOTAL_XP}")
    if detail is not None and not isinstance(detail, Mapping):
        raise InvalidAwardError("detail must be an object when provided")
    return XPEvent(
        kind=kind.strip(),
        xp_gained=xp_gained,
        detail=dict(detail) if detail is not None else None,
        timestamp=timestamp or _utcnow(),
    )


# ----- service -------------------------------------------------------------
class ProgressionEngine:
    """Progression service bound to one store and one badge catalog.

    Parameters
    ----------
    store:
        Persistence backend. Defaults to a fresh in-memory store.
    catalog:
        Badge catalog. Defaults to the application catalog.
    max_write_retries:
        How often a write that lost a version race is recomputed before a
        :class:`PersistenceError` is raised.
    history_limit:
        Number of raw XP events kept in ``xp_history``; 0 keeps everything.
    clock:
        Callable returning the current UTC time, injectable for tests.
    """

    def __init__(
        self,
        store: Optional[BaseStateStore] = None,
        catalog: Optional[BadgeCatalog] = None,
        *,
        max_write_retries: Optional[int] = None,
        history_limit: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store if store is not None else InMemoryProgressionStore()
        self.catalog = catalog or BADGE_CATALOG
        if max_write_retries is None:
            max_write_retries = get_env_int("PROGRESSION_MAX_WRITE_RETRIES", DEFAULT_MAX_WRITE_RETRIES)
        if history_limit is None:
            history_limit = get_env_int("PROGRESSION_XP_HISTORY_LIMIT", DEFAULT_XP_HISTORY_LIMIT)
        if max_write_retries < 0:
            raise ValueError("max_write_retries must be >= 0")
        if history_limit < 0:
            raise ValueError("history_limit must be >= 0")
        self.max_write_retries = int(max_write_retries)
        self.history_limit = int(history_limit)
        self._clock = clock or _utcnow
        self._locks: Dict[str, _UserLock] = {}
        self._locks_guard = threading.Lock()

    # ----- public API --------------------------------------------------
    def get_state(self, user_id: str) -> ProgressionState:
        """Return the stored state, or zeroed defaults for unseen users."""

        return self._load(_validate_user_id(user_id))

    def get_level(self, user_id: str) -> UserLevel:
        return calculate_level(self.get_state(user_id).total_xp)

    def get_badge_progress(self, user_id: str) -> List[BadgeProgress]:
        state = self.get_state(user_id)
        return progress_report(state.stats, state.total_xp, state.earned_badges, self.catalog)

    def list_achievements(
        self, user_id: str, limit: Optional[int] = DEFAULT_RECENT_ACHIEVEMENTS
    ) -> List[Achievement]:
        """Return the most recent achievements first; ``limit=None`` returns all."""

        # Stable sort: entries of one award keep badge-then-level order.
        recent = sorted(self.get_state(user_id).achievements, key=lambda a: a.timestamp, reverse=True)
        if limit is not None and limit >= 0:
            return recent[:limit]
        return recent

    def award_xp(
        self,
        user_id: str,
        kind: str,
        xp_gained: int,
        detail: Optional[Mapping[str, Any]] = None,
    ) -> AwardResult:
        """Award XP, unlock badges and emit achievements in one atomic step."""

        user_id = _validate_user_id(user_id)
        event = build_event(kind, xp_gained, detail, timestamp=self._clock())

        def compute(state: ProgressionState) -> Tuple[ProgressionState, AwardResult]:
            result = apply_award(
                state,
                event,
                catalog=self.catalog,
                now=self._clock(),
                history_limit=self.history_limit,
            )
            return result.state, result

        result = self._mutate(user_id, compute)
        self._log_award("progression.award", user_id, event, result)
        return result

    def update_stats(self, user_id: str, partial_stats: Mapping[str, Any]) -> ProgressionState:
        """Merge counters without evaluating badges or levels.

        Call :meth:`award_xp` (possibly with zero XP) afterwards, or use
        :meth:`record_event`, when badge effects should be checked.
        """

        user_id = _validate_user_id(user_id)
        validate_stat_update(partial_stats)

        def compute(state: ProgressionState) -> Tuple[ProgressionState, ProgressionState]:
            updated = merge_stats(state, partial_stats)
            updated.updated_at = self._clock()
            return updated, updated

        updated = self._mutate(user_id, compute)
        _log_json("progression.stats", {"user_id": user_id, "stats": dict(partial_stats)})
        return updated

    def record_event(
        self,
        user_id: str,
        kind: str,
        xp_gained: Optional[int] = None,
        detail: Optional[Mapping[str, Any]] = None,
        occurred_at: Optional[datetime] = None,
    ) -> AwardResult:
        """Apply a learning event's stat increments, streak and XP atomically."""

        user_id = _validate_user_id(user_id)
        rule = EVENT_RULES.get(kind) if isinstance(kind, str) else None
        if rule is None:
            allowed = ", ".join(sorted(EVENT_RULES))
            raise InvalidAwardError(f"Unknown event kind {kind!r}. Allowed kinds: {allowed}")
        now = self._clock()
        event = build_event(kind, rule.xp if xp_gained is None else xp_gained, detail, timestamp=now)
        activity_day = _as_utc(occurred_at or now).date()

        def compute(state: ProgressionState) -> Tuple[ProgressionState, AwardResult]:
            staged = state.model_copy(deep=True)
            counters = staged.stats.model_dump()
            for name, increment in rule.increments.items():
                counters[name] += increment
            staged.stats = ProgressionStats(**counters)
            advance_streak(staged, activity_day)
            result = apply_award(
                staged,
                event,
                catalog=self.catalog,
                now=now,
                history_limit=self.history_limit,
            )
            return result.state, result

        result = self._mutate(user_id, compute)
        self._log_award("progression.event", user_id, event, result)
        return result

    def reset(self, user_id: str) -> ProgressionState:
        """Administrative reset: zero every field of the learner's state."""

        user_id = _validate_user_id(user_id)

        def compute(state: ProgressionState) -> Tuple[ProgressionState, ProgressionState]:
            fresh = ProgressionState.default(user_id, version=state.version)
            fresh.updated_at = self._clock()
            return fresh, fresh

        fresh = self._mutate(user_id, compute)
        _LOGGER.warning("Progression state reset for %s", user_id)
        _log_json("progression.reset", {"user_id": user_id})
        return fresh

    # ----- helpers -----------------------------------------------------
    @contextmanager
    def _user_lock(self, user_id: str) -> Iterator[None]:
        # Entries live only while someone holds or waits on them.
        with self._locks_guard:
            entry = self._locks.get(user_id)
            if entry is None:
                entry = self._locks[user_id] = _UserLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[user_id]

    def _load(self, user_id: str) -> ProgressionState:
        try:
            raw = self.store.read(user_id)
        except StateStoreError as exc:
            _LOGGER.warning("Falling back to default progression state for %s: %s", user_id, exc)
            return ProgressionState.default(user_id)

        if raw is None:
            return ProgressionState.default(user_id)

        try:
            version = max(0, int(raw.get("version", 0) or 0))
        except (TypeError, ValueError):
            version = 0
        if raw.get("_malformed"):
            _LOGGER.warning("Stored progression state for %s is malformed; using defaults", user_id)
            return ProgressionState.default(user_id, version=version)

        payload = {k: v for k, v in raw.items() if not k.startswith("_")}
        payload["user_id"] = user_id
        payload["version"] = version
        try:
            return ProgressionState.model_validate(payload)
        except ValidationError as exc:
            _LOGGER.warning(
                "Stored progression state for %s failed validation (%s error(s)); using defaults",
                user_id,
                exc.error_count(),
            )
            return ProgressionState.default(user_id, version=version)

    def _mutate(
        self,
        user_id: str,
        compute: Callable[[ProgressionState], Tuple[ProgressionState, _T]],
    ) -> _T:
        with self._user_lock(user_id):
            conflicts = 0
            while True:
                current = self._load(user_id)
                updated, outcome = compute(current)
                payload = updated.model_dump(mode="json")
                try:
                    version = self.store.write(user_id, payload, current.version)
                except ConcurrentUpdateError as exc:
                    conflicts += 1
                    if conflicts > self.max_write_retries:
                        raise PersistenceError(
                            f"gave up writing progression state for {user_id} after {conflicts} conflicts",
                            result=outcome,
                        ) from exc
                    _LOGGER.warning(
                        "Stale progression state for %s (attempt %s); recomputing", user_id, conflicts
                    )
                    continue
                except StateStoreError as exc:
                    raise PersistenceError(
                        f"failed to persist progression state for {user_id}: {exc}",
                        result=outcome,
                    ) from exc
                updated.version = version
                return outcome

    def _log_award(self, event_name: str, user_id: str, event: XPEvent, result: AwardResult) -> None:
        _log_json(
            event_name,
            {
                "user_id": user_id,
                "kind": event.kind,
                "xp_gained": event.xp_gained,
                "total_xp": result.state.total_xp,
                "previous_level": result.previous_level,
                "level": result.level.level,
                "leveled_up": result.leveled_up,
                "badges": [a.badge_id for a in result.achievements if a.badge_id],
            },
        )
