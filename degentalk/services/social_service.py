"""
degentalk.services.social_service — Follows
=============================================
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from degentalk.database.engine import get_session
from degentalk.database.models import User, UserFollow
from degentalk.errors import (
    BadRequestError,
    BusinessRuleViolationError,
    ConflictError,
    NotFoundError,
)
from degentalk.services.notification_service import NotificationType, notify

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


def follow(
    engine: Engine, follower_id: int, followed_id: int, *, max_following: int | None = None,
) -> None:
    if follower_id == followed_id:
        raise BadRequestError("You cannot follow yourself")

    with get_session(engine) as session:
        follower = session.get(User, follower_id)
        target = session.get(User, followed_id)
        if follower is None or target is None:
            raise NotFoundError("User")
        if session.get(UserFollow, (follower_id, followed_id)) is not None:
            raise ConflictError("Already following this user")
        if max_following is not None:
            following = session.scalar(
                select(func.count()).select_from(UserFollow)
                .where(UserFollow.follower_id == follower_id)
            ) or 0
            if following >= max_following:
                raise BusinessRuleViolationError(
                    f"You can follow at most {max_following} users",
                )
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(UserFollow(follower_id=follower_id, followed_id=followed_id))
                session.flush()
        except IntegrityError as exc:
            # Lost a race with a concurrent follow of the same pair
            raise ConflictError("Already following this user") from exc

        notify(
            session, followed_id, NotificationType.NEW_FOLLOWER,
            f"{follower.username} started following you",
            data={"follower_id": follower_id},
        )
    logger.info("User %d followed %d", follower_id, followed_id)


def unfollow(engine: Engine, follower_id: int, followed_id: int) -> None:
    with get_session(engine) as session:
        row = session.get(UserFollow, (follower_id, followed_id))
        if row is None:
            raise NotFoundError("Follow relationship")
        session.delete(row)


def is_following(engine: Engine, follower_id: int, followed_id: int) -> bool:
    with get_session(engine) as session:
        return session.get(UserFollow, (follower_id, followed_id)) is not None


def _page(engine: Engine, join_col, filter_col, user_id: int, limit: int, offset: int):
    with get_session(engine) as session:
        if session.get(User, user_id) is None:
            raise NotFoundError("User")
        rows = session.execute(
            select(User, UserFollow.created_at)
            .join(UserFollow, join_col == User.id)
            .where(filter_col == user_id)
            .order_by(UserFollow.created_at.desc(), User.id)
            .offset(offset)
            .limit(limit)
        ).all()
        return [
            {
                "user_id": user.id,
                "username": user.username,
                "level": user.level,
                "avatar_url": user.avatar_url,
                "followed_at": since.isoformat() if since else None,
            }
            for user, since in rows
        ]


def get_followers(
    engine: Engine, user_id: int, *, limit: int = 50, offset: int = 0,
) -> list[dict[str, Any]]:
    return _page(engine, UserFollow.follower_id, UserFollow.followed_id, user_id, limit, offset)


def get_following(
    engine: Engine, user_id: int, *, limit: int = 50, offset: int = 0,
) -> list[dict[str, Any]]:
    return _page(engine, UserFollow.followed_id, UserFollow.follower_id, user_id, limit, offset)


def get_follow_counts(engine: Engine, user_id: int) -> dict[str, int]:
    with get_session(engine) as session:
        followers = session.scalar(
            select(func.count()).select_from(UserFollow).where(UserFollow.followed_id == user_id)
        ) or 0
        following = session.scalar(
            select(func.count()).select_from(UserFollow).where(UserFollow.follower_id == user_id)
        ) or 0
    return {"followers": followers, "following": following}
