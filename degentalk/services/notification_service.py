"""
degentalk.services.notification_service — In-App Notifications
================================================================

Other services call :func:`notify` inside their own transaction so the
notification commits (or rolls back) together with the action that
caused it.
"""

from __future__ import annotations

import enum
import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from degentalk.database.engine import get_session
from degentalk.database.models import Notification
from degentalk.errors import NotFoundError

logger = logging.getLogger(__name__)


class NotificationType(enum.StrEnum):
    TIP_RECEIVED = "tip_received"
    RAIN_RECEIVED = "rain_received"
    TRANSFER_RECEIVED = "transfer_received"
    LEVEL_UP = "level_up"
    ACHIEVEMENT_UNLOCKED = "achievement_unlocked"
    POST_REPLY = "post_reply"
    MENTION = "mention"
    POST_LIKED = "post_liked"
    NEW_FOLLOWER = "new_follower"
    DEPOSIT_COMPLETED = "deposit_completed"
    WITHDRAWAL_COMPLETED = "withdrawal_completed"
    WITHDRAWAL_FAILED = "withdrawal_failed"


def notify(
    session: Session,
    user_id: int,
    type: str,
    title: str,
    body: str | None = None,
    data: dict[str, Any] | None = None,
) -> Notification:
    """Queue a notification for *user_id* in the caller's transaction."""
    row = Notification(user_id=user_id, type=str(type), title=title, body=body, data=data)
    session.add(row)
    return row


def _to_dict(n: Notification) -> dict[str, Any]:
    return {
        "id": n.id,
        "type": n.type,
        "title": n.title,
        "body": n.body,
        "data": n.data,
        "is_read": n.is_read,
        "created_at": n.created_at.isoformat() if n.created_at else None,
    }


def list_notifications(
    engine,
    user_id: int,
    *,
    unread_only: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> list[dict[str, Any]]:
    with get_session(engine) as session:
        query = (
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset)
            .limit(limit)
        )
        if unread_only:
            query = query.where(Notification.is_read.is_(False))
        return [_to_dict(n) for n in session.scalars(query).all()]


def unread_count(engine, user_id: int) -> int:
    with get_session(engine) as session:
        return session.scalar(
            select(func.count()).select_from(Notification).where(
                Notification.user_id == user_id,
                Notification.is_read.is_(False),
            )
        ) or 0


def mark_read(engine, user_id: int, notification_id: int) -> None:
    """Mark one of the user's notifications as read.

    Raises :class:`NotFoundError` for unknown ids and ids owned by others.
    """
    with get_session(engine) as session:
        row = session.get(Notification, notification_id)
        if row is None or row.user_id != user_id:
            raise NotFoundError("Notification")
        row.is_read = True


def mark_all_read(engine, user_id: int) -> int:
    with get_session(engine) as session:
        result = session.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True)
        )
        return result.rowcount or 0
