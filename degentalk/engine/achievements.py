"""
degentalk.engine.achievements — Achievement Trigger Evaluation
================================================================

Handler registry for achievement triggers.  Each :class:`TriggerType`
maps to a pure function receiving the achievement's ``trigger_config``
and an :class:`AchievementContext` snapshot of the user.

No database I/O here: :mod:`degentalk.services.achievement_service`
builds the context and persists whatever this module says was earned.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from degentalk.database.models import TriggerType
from degentalk.errors import ValidationError

if TYPE_CHECKING:
    from degentalk.engine.cache import ConfigCache

logger = logging.getLogger(__name__)

# Per-user counters a stat_threshold / first_action trigger may name
VALID_STAT_FIELDS: frozenset[str] = frozenset({
    "posts_created",
    "threads_created",
    "likes_received",
    "tips_sent",
    "tips_received",
    "clout",
})


@dataclass(frozen=True, slots=True)
class AchievementContext:
    """Snapshot of a user handed to every trigger handler.

    Parameters
    ----------
    user_xp : Total XP after the event.
    user_level : Level after the event.
    old_level : Level before the event; ``None`` unless the event levelled up.
    stats : Counters keyed by :data:`VALID_STAT_FIELDS`.
    """

    user_xp: int = 0
    user_level: int = 1
    old_level: int | None = None
    stats: dict[str, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Trigger handlers — (config, ctx) → bool
# ---------------------------------------------------------------------------
def _check_stat_threshold(config: dict, ctx: AchievementContext) -> bool:
    """Config: ``{"field": "posts_created", "value": 100}``"""
    field_name = config.get("field", "")
    value = config.get("value")
    if field_name not in VALID_STAT_FIELDS or value is None:
        return False
    return ctx.stats.get(field_name, 0) >= value


def _check_xp_milestone(config: dict, ctx: AchievementContext) -> bool:
    """Config: ``{"value": 5000}``"""
    value = config.get("value")
    if value is None:
        return False
    return ctx.user_xp >= value


def _check_level_reached(config: dict, ctx: AchievementContext) -> bool:
    """Config: ``{"value": 10}``"""
    value = config.get("value")
    if value is None:
        return False
    return ctx.user_level >= value


def _check_level_interval(config: dict, ctx: AchievementContext) -> bool:
    """Fires on a level-up that lands on a multiple of ``interval``.

    Config: ``{"interval": 5}``
    """
    interval = config.get("interval")
    if interval is None or interval <= 0:
        return False
    if ctx.old_level is None or ctx.old_level == ctx.user_level:
        return False
    return ctx.user_level % interval == 0


def _check_first_action(config: dict, ctx: AchievementContext) -> bool:
    """Config: ``{"field": "tips_sent"}``"""
    field_name = config.get("field", "")
    if field_name not in VALID_STAT_FIELDS:
        return False
    return ctx.stats.get(field_name, 0) >= 1


TRIGGER_HANDLERS: dict[str, Callable[[dict, AchievementContext], bool]] = {
    TriggerType.STAT_THRESHOLD: _check_stat_threshold,
    TriggerType.XP_MILESTONE: _check_xp_milestone,
    TriggerType.LEVEL_REACHED: _check_level_reached,
    TriggerType.LEVEL_INTERVAL: _check_level_interval,
    TriggerType.FIRST_ACTION: _check_first_action,
    # MANUAL is granted by staff only
}


def validate_trigger(trigger_type: str, config: dict[str, Any] | None) -> dict[str, Any]:
    """Check an admin-supplied trigger and return the config to store.

    Raises
    ------
    ValidationError
        Unknown trigger type, unknown stat field, or a missing/non-positive
        threshold.
    """
    if trigger_type not in {t.value for t in TriggerType}:
        raise ValidationError(f"Unknown trigger type '{trigger_type}'")
    config = dict(config or {})
    if trigger_type in (TriggerType.STAT_THRESHOLD, TriggerType.FIRST_ACTION):
        if config.get("field") not in VALID_STAT_FIELDS:
            raise ValidationError(
                f"Trigger field must be one of {sorted(VALID_STAT_FIELDS)}",
            )
    key = {
        TriggerType.STAT_THRESHOLD: "value",
        TriggerType.XP_MILESTONE: "value",
        TriggerType.LEVEL_REACHED: "value",
        TriggerType.LEVEL_INTERVAL: "interval",
    }.get(trigger_type)
    if key is not None:
        value = config.get(key)
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise ValidationError(f"Trigger '{key}' must be a positive integer")
    return config


def check_achievements(
    cache: ConfigCache,
    ctx: AchievementContext,
    already_earned: set[int],
) -> list[int]:
    """Return ids of active achievements newly earned under *ctx*.

    A tier above the first in a series is skipped until the tier below it
    is in *already_earned*.
    """
    newly_earned: list[int] = []

    for achievement in cache.get_active_achievements():
        if achievement.id in already_earned:
            continue

        if (
            achievement.series is not None
            and achievement.series_order is not None
            and achievement.series_order > 1
        ):
            predecessor = cache.get_series_predecessor(
                achievement.series, achievement.series_order,
            )
            if predecessor is not None and predecessor.id not in already_earned:
                continue

        handler = TRIGGER_HANDLERS.get(achievement.trigger_type)
        if handler is None:
            continue

        if handler(achievement.trigger_config or {}, ctx):
            newly_earned.append(achievement.id)
            logger.debug("Achievement %s (id=%d) triggered", achievement.key, achievement.id)

    return newly_earned
