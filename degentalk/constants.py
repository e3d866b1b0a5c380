"""
degentalk.constants — Shared Constants & Leveling Formula
===========================================================

Single source of truth for the level curve and level rarity tiers.
Import from here instead of duplicating in services and routes.
"""

from __future__ import annotations

import math
from collections.abc import Iterable

# ---------------------------------------------------------------------------
# Level thresholds for the hand-tuned early game (levels 2–10)
# ---------------------------------------------------------------------------
LEVEL_XP_MAP: dict[int, int] = {
    2: 250,
    3: 750,
    4: 1500,
    5: 2500,
    6: 4000,
    7: 6000,
    8: 8500,
    9: 11500,
    10: 15000,
}

DEFAULT_CURVE_BASE_XP = 100
DEFAULT_CURVE_MAX_LEVEL = 100

RARITY_TIERS: list[tuple[int, str]] = [
    (90, "mythic"),
    (75, "legendary"),
    (50, "epic"),
    (25, "rare"),
]


# ---------------------------------------------------------------------------
# Leveling formula — THE single canonical implementation
# ---------------------------------------------------------------------------
def xp_for_level(level: int) -> int:
    """Total XP required to reach *level*.

    Level 1 (and anything below) is free.  Levels 2–10 come from
    :data:`LEVEL_XP_MAP`; beyond that ``level² × 250 − 250``.
    """
    if level <= 1:
        return 0
    if level in LEVEL_XP_MAP:
        return LEVEL_XP_MAP[level]
    return level * level * 250 - 250


def level_for_xp(xp: int, thresholds: Iterable[tuple[int, int]] | None = None) -> int:
    """Highest level whose threshold is ≤ *xp*.

    *thresholds* is an optional iterable of ``(level, min_xp)`` pairs (rows
    from the ``levels`` table).  Without it the formula is used.
    """
    if thresholds is not None:
        best = 1
        for level, min_xp in thresholds:
            if xp >= min_xp and level > best:
                best = level
        return best

    level = 1
    while xp >= xp_for_level(level + 1):
        level += 1
    return level


def generate_xp_curve(
    max_level: int = DEFAULT_CURVE_MAX_LEVEL,
    base_xp: int = DEFAULT_CURVE_BASE_XP,
) -> list[dict[str, int | str]]:
    """Build a smooth ``floor(base × level^1.8 × 1.2)`` curve for bulk import."""
    if max_level < 1:
        raise ValueError("max_level must be at least 1")
    curve: list[dict[str, int | str]] = []
    for level in range(1, max_level + 1):
        min_xp = 0 if level == 1 else math.floor(base_xp * level ** 1.8 * 1.2)
        curve.append({
            "level": level,
            "min_xp": min_xp,
            "rarity": level_rarity(level),
        })
    return curve


def level_rarity(level: int) -> str:
    for floor_level, rarity in RARITY_TIERS:
        if level >= floor_level:
            return rarity
    return "common"


def level_progress(xp: int, current_min: int, next_min: int | None) -> float:
    """Fraction of the way from *current_min* to *next_min*, clamped to [0, 1]."""
    if next_min is None or next_min <= current_min:
        return 1.0
    return max(0.0, min(1.0, (xp - current_min) / (next_min - current_min)))
