"""
degentalk.services.xp_service — XP Awards, Adjustments & Leveling
===================================================================

Pipeline for :func:`award_xp`:

    action → resolve config → daily/cooldown limits → role × forum multiplier
           → sanitize → daily XP cap → log → apply XP → level-up side effects

Every ``*_in_session`` variant joins the caller's transaction so forum,
tip and payment flows can award XP atomically with their own writes.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from degentalk.constants import level_for_xp, level_progress, xp_for_level
from degentalk.database.engine import get_session
from degentalk.database.models import (
    Role,
    User,
    UserRoleLink,
    Wallet,
    XpActionLog,
    XpAdjustmentLog,
    as_utc,
    utcnow,
)
from degentalk.engine.economy import from_micro
from degentalk.engine.multipliers import sanitize_multiplier
from degentalk.engine.xp_actions import XpAction, XpActionConfig
from degentalk.errors import NotFoundError, ValidationError
from degentalk.services import wallet_service
from degentalk.services.notification_service import NotificationType, notify

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from degentalk.engine.cache import ConfigCache

logger = logging.getLogger(__name__)

ADJUSTMENT_TYPES = ("add", "subtract", "set")
LEADERBOARD_METRICS = ("xp", "clout", "dgt")
TIP_ACTIONS = frozenset({XpAction.TIP_GIVEN.value, XpAction.TIP_RECEIVED.value})


@dataclass
class XpUpdateResult:
    user_id: int
    old_xp: int
    new_xp: int
    old_level: int
    new_level: int

    @property
    def amount(self) -> int:
        return self.new_xp - self.old_xp

    @property
    def leveled_up(self) -> bool:
        return self.new_level > self.old_level


def _day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------
def _action_usage(
    session: Session, user_id: int, action: str, now: datetime,
) -> tuple[int, datetime | None]:
    """Return (awards today, timestamp of the most recent award)."""
    count = session.scalar(
        select(func.count()).select_from(XpActionLog).where(
            XpActionLog.user_id == user_id,
            XpActionLog.action == action,
            XpActionLog.created_at >= _day_start(now),
        )
    ) or 0
    last = session.scalar(
        select(func.max(XpActionLog.created_at)).where(
            XpActionLog.user_id == user_id,
            XpActionLog.action == action,
        )
    )
    return count, as_utc(last)


def _cooldown_remaining(cfg: XpActionConfig, last: datetime | None, now: datetime) -> int:
    if not cfg.cooldown_sec or last is None:
        return 0
    remaining = cfg.cooldown_sec - (now - last).total_seconds()
    return max(0, math.ceil(remaining))


def check_action_limits(
    session: Session, user_id: int, cfg: XpActionConfig, now: datetime | None = None,
) -> tuple[bool, str | None]:
    """Return ``(allowed, reason)`` for awarding *cfg* to the user right now."""
    now = now or utcnow()
    count, last = _action_usage(session, user_id, cfg.action, now)
    if cfg.max_per_day is not None and count >= cfg.max_per_day:
        return False, f"Daily limit of {cfg.max_per_day} reached for {cfg.action}"
    if _cooldown_remaining(cfg, last, now) > 0:
        return False, f"{cfg.action} is on cooldown"
    return True, None


def _xp_earned_today(
    session: Session, user_id: int, now: datetime, actions: frozenset[str] | None = None,
) -> int:
    query = select(func.coalesce(func.sum(XpActionLog.amount), 0)).where(
        XpActionLog.user_id == user_id,
        XpActionLog.created_at >= _day_start(now),
    )
    if actions is not None:
        query = query.where(XpActionLog.action.in_(actions))
    return session.scalar(query) or 0


def get_role_multiplier(session: Session, user: User) -> float:
    """Highest ``xp_multiplier`` among the user's granted roles and primary role."""
    best = session.scalar(
        select(func.max(Role.xp_multiplier))
        .select_from(Role)
        .outerjoin(UserRoleLink, UserRoleLink.role_id == Role.id)
        .where(or_(UserRoleLink.user_id == user.id, Role.name == user.role))
    )
    return float(best) if best else 1.0


# ---------------------------------------------------------------------------
# Applying XP
# ---------------------------------------------------------------------------
def _level_table(cache: ConfigCache) -> list[tuple[int, int]] | None:
    rows = cache.get_levels()
    return [(level, min_xp) for level, min_xp, _ in rows] or None


def _threshold(cache: ConfigCache, level: int) -> int | None:
    """XP needed for *level*; ``None`` past the top of a configured levels table."""
    rows = cache.get_levels()
    if not rows:
        return xp_for_level(level)
    for lvl, min_xp, _ in rows:
        if lvl == level:
            return min_xp
    return None


def apply_xp(session: Session, cache: ConfigCache, user: User, new_xp: int) -> XpUpdateResult:
    """Set the user's XP, recompute their level and fire level-up side effects."""
    old_xp, old_level = user.xp, user.level
    user.xp = max(0, new_xp)
    user.level = level_for_xp(user.xp, _level_table(cache))
    result = XpUpdateResult(user.id, old_xp, user.xp, old_level, user.level)
    if result.leveled_up:
        _on_level_up(session, cache, user, old_level, user.level)
    return result


def _on_level_up(
    session: Session, cache: ConfigCache, user: User, old_level: int, new_level: int,
) -> None:
    reward = sum(
        reward_dgt
        for level, _, reward_dgt in cache.get_levels()
        if old_level < level <= new_level and reward_dgt > 0
    )
    if reward:
        wallet_service.credit(
            session, user.id, reward, "level_reward",
            economy=cache.economy(),
            reference=f"level_{new_level}",
            metadata={"old_level": old_level, "new_level": new_level},
        )
    notify(
        session, user.id, NotificationType.LEVEL_UP,
        f"You reached level {new_level}!",
        data={"old_level": old_level, "new_level": new_level, "reward_dgt": reward},
    )
    logger.info("User %d leveled up %d → %d", user.id, old_level, new_level)


# ---------------------------------------------------------------------------
# Awards
# ---------------------------------------------------------------------------
def award_xp_in_session(
    session: Session,
    cache: ConfigCache,
    user_id: int,
    action: str,
    *,
    metadata: dict[str, Any] | None = None,
    forum_id: int | None = None,
) -> XpUpdateResult | None:
    """Award XP for *action* inside the caller's transaction.

    Returns ``None`` when nothing was awarded (unknown or disabled action,
    daily limit, cooldown, or daily XP cap reached).  Achievements are
    evaluated either way, since the event itself may complete one.
    """
    # achievement_service imports this module
    from degentalk.services import achievement_service

    result = _award_xp(session, cache, user_id, action, metadata=metadata, forum_id=forum_id)
    achievement_service.evaluate_in_session(
        session, cache, user_id,
        old_level=result.old_level if result is not None and result.leveled_up else None,
    )
    return result


def _award_xp(
    session: Session,
    cache: ConfigCache,
    user_id: int,
    action: str,
    *,
    metadata: dict[str, Any] | None,
    forum_id: int | None,
) -> XpUpdateResult | None:
    cfg = cache.get_xp_action(action)
    if cfg is None:
        logger.debug("XP action %s unknown or disabled", action)
        return None

    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("User")

    now = utcnow()
    allowed, reason = check_action_limits(session, user_id, cfg, now)
    if not allowed:
        logger.info("XP refused for user %d: %s", user_id, reason)
        return None

    xp_cfg = cache.economy().xp
    role_mult = get_role_multiplier(session, user)
    forum_mult = cache.get_forum_multiplier(forum_id)
    mult = sanitize_multiplier(role_mult, forum_mult, xp_cfg.multipliers.limits())
    amount = math.floor(cfg.base_value * mult.final_multiplier)

    remaining = xp_cfg.max_xp_per_day - _xp_earned_today(session, user_id, now)
    if cfg.action in TIP_ACTIONS:
        remaining = min(
            remaining,
            xp_cfg.max_tip_xp_per_day - _xp_earned_today(session, user_id, now, TIP_ACTIONS),
        )
    amount = min(amount, remaining)
    if amount <= 0:
        logger.info("XP refused for user %d: daily XP cap reached", user_id)
        return None

    session.add(XpActionLog(
        user_id=user_id,
        action=cfg.action,
        amount=amount,
        metadata_={
            **(metadata or {}),
            "base": cfg.base_value,
            "role_multiplier": role_mult,
            "forum_multiplier": forum_mult,
            "multiplier": mult.final_multiplier,
            "was_capped": mult.was_capped,
        },
        created_at=now,
    ))
    result = apply_xp(session, cache, user, user.xp + amount)
    logger.info(
        "Awarded %d XP to user %d for %s (×%.2f)", amount, user_id, cfg.action, mult.final_multiplier,
    )
    return result


def award_xp(
    engine: Engine,
    cache: ConfigCache,
    user_id: int,
    action: str,
    *,
    metadata: dict[str, Any] | None = None,
    forum_id: int | None = None,
) -> XpUpdateResult | None:
    with get_session(engine) as session:
        return award_xp_in_session(
            session, cache, user_id, action, metadata=metadata, forum_id=forum_id,
        )


def adjust_user_xp_in_session(
    session: Session,
    cache: ConfigCache,
    user_id: int,
    amount: int,
    adjustment_type: str,
    *,
    reason: str | None = None,
    admin_id: int | None = None,
) -> XpUpdateResult:
    """Add, subtract or set a user's XP.  Levels follow XP in both directions."""
    if adjustment_type not in ADJUSTMENT_TYPES:
        raise ValidationError(
            f"Invalid adjustment type '{adjustment_type}'. Must be one of {ADJUSTMENT_TYPES}",
        )
    if amount < 0:
        raise ValidationError("Amount must not be negative")

    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("User")

    if adjustment_type == "add":
        new_xp = user.xp + amount
    elif adjustment_type == "subtract":
        new_xp = max(0, user.xp - amount)
    else:
        new_xp = amount

    old_xp = user.xp
    result = apply_xp(session, cache, user, new_xp)
    if admin_id is not None:
        session.add(XpAdjustmentLog(
            user_id=user_id,
            admin_id=admin_id,
            adjustment_type=adjustment_type,
            amount=amount,
            reason=reason,
            old_xp=old_xp,
            new_xp=user.xp,
        ))
    return result


def adjust_user_xp(
    engine: Engine,
    cache: ConfigCache,
    user_id: int,
    amount: int,
    adjustment_type: str,
    *,
    reason: str | None = None,
    admin_id: int | None = None,
) -> XpUpdateResult:
    with get_session(engine) as session:
        return adjust_user_xp_in_session(
            session, cache, user_id, amount, adjustment_type,
            reason=reason, admin_id=admin_id,
        )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_user_xp_info(engine: Engine, cache: ConfigCache, user_id: int) -> dict[str, Any]:
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User")
        xp, level = user.xp, user.level

    current_min = _threshold(cache, level) or 0
    next_min = _threshold(cache, level + 1)
    return {
        "user_id": user_id,
        "xp": xp,
        "level": level,
        "current_level_xp": current_min,
        "next_level": level + 1 if next_min is not None else None,
        "next_level_xp": next_min,
        "xp_to_next_level": max(0, next_min - xp) if next_min is not None else 0,
        "progress": round(level_progress(xp, current_min, next_min), 4),
    }


def get_action_limits_for_user(
    engine: Engine, cache: ConfigCache, user_id: int, action: str,
) -> dict[str, Any]:
    cfg = cache.get_xp_action(action)
    if cfg is None:
        raise NotFoundError("XP action")
    now = utcnow()
    with get_session(engine) as session:
        count, last = _action_usage(session, user_id, cfg.action, now)

    cooldown = _cooldown_remaining(cfg, last, now)
    under_limit = cfg.max_per_day is None or count < cfg.max_per_day
    return {
        "action": cfg.action,
        "daily_limit": cfg.max_per_day,
        "daily_count": count,
        "is_on_cooldown": cooldown > 0,
        "cooldown_remaining": cooldown,
        "can_receive": under_limit and cooldown == 0,
    }


def get_xp_history(engine: Engine, user_id: int, limit: int = 50) -> list[dict[str, Any]]:
    with get_session(engine) as session:
        rows = session.scalars(
            select(XpActionLog)
            .where(XpActionLog.user_id == user_id)
            .order_by(XpActionLog.created_at.desc(), XpActionLog.id.desc())
            .limit(limit)
        ).all()
        return [
            {
                "id": r.id,
                "action": r.action,
                "amount": r.amount,
                "metadata": r.metadata_,
                "created_at": r.created_at.isoformat() if r.created_at else None,
            }
            for r in rows
        ]


def get_leaderboard(
    engine: Engine, metric: str = "xp", *, limit: int = 25, offset: int = 0,
) -> list[dict[str, Any]]:
    """Ranked users by ``xp``, ``clout`` or DGT balance."""
    if metric not in LEADERBOARD_METRICS:
        raise ValidationError(f"Unknown leaderboard metric '{metric}'")

    with get_session(engine) as session:
        if metric == "dgt":
            query = (
                select(User, Wallet.balance)
                .join(Wallet, Wallet.user_id == User.id)
                .where(User.is_banned.is_(False))
                .order_by(Wallet.balance.desc(), User.id)
            )
        else:
            column = User.xp if metric == "xp" else User.clout
            query = (
                select(User, column)
                .where(User.is_banned.is_(False))
                .order_by(column.desc(), User.id)
            )
        rows = session.execute(query.offset(offset).limit(limit)).all()

        board = []
        for rank, (user, value) in enumerate(rows, start=offset + 1):
            board.append({
                "rank": rank,
                "user_id": user.id,
                "username": user.username,
                "level": user.level,
                "value": str(from_micro(value)) if metric == "dgt" else value,
            })
        return board
