"""Leveling curve for accumulated XP.

Level 1 spans 100 XP; every later level ``n`` spans ``n * 200 - 100`` XP, so
levels start at 0, 100, 400, 900, 1600, ... cumulative XP, i.e. level ``n``
begins at ``100 * (n - 1) ** 2``.
"""

from __future__ import annotations

from math import isqrt

from schemas import UserLevel

BASE_LEVEL_XP = 100


def xp_span_for_level(level: int) -> int:
    """Return the XP needed to get from the start of ``level`` to the next one."""

    if level < 1:
        raise ValueError("level must be >= 1")
    return level * 200 - 100


def total_xp_for_level(level: int) -> int:
    """Return the cumulative XP at which ``level`` begins."""

    if level < 1:
        raise ValueError("level must be >= 1")
    return BASE_LEVEL_XP * (level - 1) ** 2


def calculate_level(total_xp: int) -> UserLevel:
    if total_xp < 0:
        raise ValueError("total_xp must be non-negative")

    level = isqrt(total_xp // BASE_LEVEL_XP) + 1
    total_required = total_xp_for_level(level)
    xp_required = xp_span_for_level(level)

    current_xp = total_xp - total_required
    return UserLevel(
        level=level,
        current_xp=current_xp,
        xp_to_next_level=xp_required - current_xp,
        total_xp=total_xp,
    )
