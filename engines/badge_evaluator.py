"""Badge unlock evaluation and progress reporting."""

from __future__ import annotations

from typing import Collection, Dict, List, Mapping, Optional, Union

from badges import BADGE_CATALOG, BadgeCatalog
from engines.base import UnknownStatError
from schemas import STAT_KINDS, BadgeDefinition, BadgeProgress, ProgressionStats

RARITY_REWARDS: Dict[str, int] = {
    "common": 50,
    "rare": 100,
    "epic": 200,
    "legendary": 500,
}
UNKNOWN_RARITY_REWARD = 25

StatsLike = Union[ProgressionStats, Mapping[str, int]]


def reward_for_rarity(rarity: str) -> int:
    return RARITY_REWARDS.get(rarity, UNKNOWN_RARITY_REWARD)


def stat_value(stats: StatsLike, stat_kind: str, total_xp: int) -> int:
    """Return the tracked value a requirement of ``stat_kind`` is compared with."""

    if stat_kind not in STAT_KINDS:
        raise UnknownStatError(f"Unknown stat kind: {stat_kind}")
    if stat_kind == "xp_earned":
        return int(total_xp)
    field = "current_streak" if stat_kind == "streak_days" else stat_kind
    if isinstance(stats, ProgressionStats):
        return int(getattr(stats, field))
    return int(stats.get(field, 0) or 0)


def evaluate_badges(
    stats: StatsLike,
    total_xp: int,
    earned_badge_ids: Collection[str],
    catalog: Optional[BadgeCatalog] = None,
) -> List[BadgeDefinition]:
    """Return the badges whose thresholds are met but which are not yet earned.

    The result keeps catalog order. Several badges can unlock in a single
    pass, for example when one large award crosses more than one XP
    threshold.
    """

    catalog = catalog or BADGE_CATALOG
    earned = set(earned_badge_ids)
    unlocked: List[BadgeDefinition] = []
    for badge in catalog:
        if badge.id in earned:
            continue
        requirement = badge.requirement
        if stat_value(stats, requirement.stat_kind, total_xp) >= requirement.threshold:
            unlocked.append(badge)
    return unlocked


def badge_progress(
    badge: BadgeDefinition,
    stats: StatsLike,
    total_xp: int,
    earned: bool,
) -> BadgeProgress:
    threshold = badge.requirement.threshold
    current = max(0, stat_value(stats, badge.requirement.stat_kind, total_xp))
    if earned:
        percent = 100.0
    else:
        percent = min(100.0, 100.0 * current / threshold)
    return BadgeProgress(
        badge=badge,
        earned=earned,
        current_value=current,
        threshold=threshold,
        progress_percent=round(max(0.0, percent), 2),
    )


def progress_report(
    stats: StatsLike,
    total_xp: int,
    earned_badge_ids: Collection[str],
    catalog: Optional[BadgeCatalog] = None,
) -> List[BadgeProgress]:
    catalog = catalog or BADGE_CATALOG
    earned = set(earned_badge_ids)
    return [badge_progress(badge, stats, total_xp, badge.id in earned) for badge in catalog]
