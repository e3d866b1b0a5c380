"""
degentalk.services.achievement_service — Unlocking & Listing Achievements
===========================================================================

:func:`evaluate_in_session` runs at the end of every XP-bearing event
(posts, threads, likes, tips, purchases) inside the caller's transaction:

    user counters → AchievementContext → engine.check_achievements
                  → user_achievements row → XP / DGT reward → notification

Reward XP is applied directly, never through the XP award pipeline, so
unlocking an achievement cannot itself trigger another award round.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from degentalk.database.engine import get_session
from degentalk.database.models import (
    Achievement,
    Post,
    PostLike,
    Thread,
    Transaction,
    TransactionType,
    User,
    UserAchievement,
)
from degentalk.engine.achievements import AchievementContext, check_achievements
from degentalk.engine.economy import format_dgt, from_micro
from degentalk.errors import BusinessRuleViolationError, NotFoundError
from degentalk.services import wallet_service, xp_service
from degentalk.services.notification_service import NotificationType, notify

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from degentalk.engine.cache import ConfigCache

logger = logging.getLogger(__name__)


def achievement_to_dict(row: Achievement) -> dict[str, Any]:
    return {
        "id": row.id,
        "key": row.key,
        "name": row.name,
        "description": row.description,
        "icon": row.icon,
        "trigger_type": row.trigger_type,
        "trigger_config": row.trigger_config or {},
        "series": row.series,
        "series_order": row.series_order,
        "reward_xp": row.reward_xp,
        "reward_dgt": str(from_micro(row.reward_dgt)),
        "is_active": row.is_active,
    }


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------
def _count(session: Session, query) -> int:
    return session.scalar(query) or 0


def get_user_stats(session: Session, user: User) -> dict[str, int]:
    """Counters that stat triggers compare against."""
    def tips(ttype: TransactionType) -> int:
        return _count(session, select(func.count()).select_from(Transaction).where(
            Transaction.user_id == user.id, Transaction.type == ttype.value,
        ))

    return {
        "posts_created": _count(session, select(func.count()).select_from(Post).where(
            Post.user_id == user.id, Post.is_deleted.is_(False),
        )),
        "threads_created": _count(session, select(func.count()).select_from(Thread).where(
            Thread.user_id == user.id, Thread.is_deleted.is_(False),
        )),
        "likes_received": _count(
            session,
            select(func.count()).select_from(PostLike)
            .join(Post, Post.id == PostLike.post_id)
            .where(Post.user_id == user.id),
        ),
        "tips_sent": tips(TransactionType.TIP_SEND),
        "tips_received": tips(TransactionType.TIP_RECEIVE),
        "clout": user.clout,
    }


def get_earned_achievement_ids(session: Session, user_id: int) -> set[int]:
    rows = session.scalars(
        select(UserAchievement.achievement_id).where(UserAchievement.user_id == user_id)
    ).all()
    return set(rows)


# ---------------------------------------------------------------------------
# Unlocking
# ---------------------------------------------------------------------------
def unlock(
    session: Session,
    cache: ConfigCache,
    user: User,
    achievement: Achievement,
    granted_by: int | None = None,
) -> None:
    session.add(UserAchievement(
        user_id=user.id, achievement_id=achievement.id, granted_by=granted_by,
    ))
    session.flush()

    if achievement.reward_xp > 0:
        xp_service.apply_xp(session, cache, user, user.xp + achievement.reward_xp)

    reward_dgt = achievement.reward_dgt
    if reward_dgt > 0:
        try:
            wallet_service.credit(
                session, user.id, reward_dgt, "achievement_reward",
                economy=cache.economy(),
                reference=f"achievement_{achievement.key}",
                metadata={"achievement_id": achievement.id},
            )
        except BusinessRuleViolationError as exc:
            logger.warning(
                "Achievement %s DGT reward for user %d skipped: %s",
                achievement.key, user.id, exc.message,
            )
            reward_dgt = 0

    notify(
        session, user.id, NotificationType.ACHIEVEMENT_UNLOCKED,
        f"Achievement unlocked: {achievement.name}",
        body=achievement.description,
        data={
            "achievement_id": achievement.id,
            "key": achievement.key,
            "reward_xp": achievement.reward_xp,
            "reward_dgt": str(from_micro(reward_dgt)),
        },
    )
    logger.info(
        "User %d unlocked %s (+%d XP, %s)",
        user.id, achievement.key, achievement.reward_xp, format_dgt(reward_dgt),
    )


def evaluate_in_session(
    session: Session,
    cache: ConfigCache,
    user_id: int,
    *,
    old_level: int | None = None,
) -> list[int]:
    """Unlock every achievement the user now qualifies for.

    Repeats until nothing new unlocks, so reward XP that lifts the user
    over another milestone (or opens the next tier of a series) is honoured
    in the same call.  Returns the ids unlocked.
    """
    if not cache.get_active_achievements():
        return []
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("User")

    earned = get_earned_achievement_ids(session, user_id)
    unlocked: list[int] = []
    while True:
        ctx = AchievementContext(
            user_xp=user.xp,
            user_level=user.level,
            old_level=old_level,
            stats=get_user_stats(session, user),
        )
        level_before = user.level
        new_ids = check_achievements(cache, ctx, earned)
        if not new_ids:
            return unlocked
        for achievement_id in new_ids:
            earned.add(achievement_id)
            achievement = session.get(Achievement, achievement_id)
            if achievement is None:
                continue
            unlock(session, cache, user, achievement)
            unlocked.append(achievement_id)
        old_level = level_before if user.level != level_before else None


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def list_achievements(engine: Engine, *, include_inactive: bool = False) -> list[dict[str, Any]]:
    with get_session(engine) as session:
        query = select(Achievement).order_by(Achievement.id)
        if not include_inactive:
            query = query.where(Achievement.is_active.is_(True))
        return [achievement_to_dict(row) for row in session.scalars(query).all()]


def list_user_achievements(engine: Engine, user_id: int) -> list[dict[str, Any]]:
    """Achievements *user_id* has earned, newest first."""
    with get_session(engine) as session:
        if session.get(User, user_id) is None:
            raise NotFoundError("User")
        rows = session.execute(
            select(Achievement, UserAchievement.earned_at)
            .join(UserAchievement, UserAchievement.achievement_id == Achievement.id)
            .where(UserAchievement.user_id == user_id)
            .order_by(UserAchievement.earned_at.desc(), Achievement.id.desc())
        ).all()
        return [
            {**achievement_to_dict(row), "earned_at": earned_at.isoformat() if earned_at else None}
            for row, earned_at in rows
        ]
