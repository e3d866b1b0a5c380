"""
degentalk.services.tip_service — Tipping & Rain
=================================================

Tips move DGT from one user to another (optionally attached to a post);
rain splits one amount equally across randomly chosen recently active
users.  Both run as a single database transaction: validation, ledger
legs, XP, clout and notifications commit together or not at all.
"""

from __future__ import annotations

import logging
import random
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from degentalk.database.engine import get_session
from degentalk.database.models import (
    ForumStructure,
    Post,
    RainEvent,
    Thread,
    Transaction,
    TransactionType,
    User,
    UserRole,
    as_utc,
    utcnow,
)
from degentalk.engine.economy import format_dgt, from_micro, to_micro
from degentalk.engine.xp_actions import XpAction
from degentalk.errors import (
    BadRequestError,
    BusinessRuleViolationError,
    FeatureDisabledError,
    NotFoundError,
    RateLimitError,
    ValidationError,
)
from degentalk.services import user_service, wallet_service, xp_service
from degentalk.services.notification_service import NotificationType, notify

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from degentalk.engine.cache import ConfigCache

logger = logging.getLogger(__name__)

STAFF_ROLES = frozenset({UserRole.ADMIN.value, UserRole.MODERATOR.value})


def _load_sender(session: Session, sender_id: int) -> User:
    sender = session.get(User, sender_id)
    if sender is None:
        raise NotFoundError("Sender")
    user_service.ensure_not_banned(session, sender)
    return sender


def _seconds_since(session: Session, query) -> float | None:
    last = as_utc(session.scalar(query))
    if last is None:
        return None
    return (utcnow() - last).total_seconds()


# ---------------------------------------------------------------------------
# Tips
# ---------------------------------------------------------------------------
def _check_tip_amount(cache: ConfigCache, sender: User, micro: int) -> None:
    tipping = cache.economy().tipping
    if micro <= 0:
        raise ValidationError("Amount must be positive")
    if micro > to_micro(tipping.max_amount):
        raise ValidationError(f"Maximum tip is {tipping.max_amount} DGT")
    if micro < to_micro(tipping.min_amount):
        # Staff may send dust tips below the public minimum
        if sender.role not in STAFF_ROLES or micro < to_micro(tipping.staff_dust_min):
            raise ValidationError(f"Minimum tip is {tipping.min_amount} DGT")


def _check_tip_pacing(session: Session, cache: ConfigCache, sender_id: int, micro: int) -> None:
    tipping = cache.economy().tipping
    elapsed = _seconds_since(
        session,
        select(func.max(Transaction.created_at)).where(
            Transaction.user_id == sender_id,
            Transaction.type == TransactionType.TIP_SEND.value,
        ),
    )
    if elapsed is not None and elapsed < tipping.cooldown_seconds:
        raise RateLimitError(
            "You are tipping too quickly",
            retry_after=max(1, int(tipping.cooldown_seconds - elapsed) + 1),
        )

    day_start = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    sent_today = -(session.scalar(
        select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.user_id == sender_id,
            Transaction.type == TransactionType.TIP_SEND.value,
            Transaction.created_at >= day_start,
        )
    ) or 0)
    if sent_today + micro > to_micro(tipping.daily_limit):
        raise BusinessRuleViolationError(
            f"Daily tipping limit of {tipping.daily_limit} DGT reached",
            details={"sent_today": str(from_micro(sent_today))},
        )


def send_tip(
    engine: Engine,
    cache: ConfigCache,
    sender_id: int,
    recipient_id: int,
    amount: Decimal,
    *,
    post_id: int | None = None,
    message: str | None = None,
) -> dict[str, Any]:
    """Tip *recipient_id*, optionally for a specific post."""
    economy = cache.economy()
    wallet_service.ensure_economy_open(economy)
    if not economy.tipping.enabled or not cache.is_feature_enabled("tipping"):
        raise FeatureDisabledError("Tipping is disabled")

    micro = to_micro(amount)
    tip_id = f"tip_{uuid.uuid4().hex}"

    with get_session(engine) as session:
        forum_id: int | None = None
        post: Post | None = None
        if post_id is not None:
            post = session.get(Post, post_id)
            if post is None or post.is_deleted:
                raise NotFoundError("Post")
            if post.user_id == sender_id:
                raise BadRequestError("You cannot tip your own post")
            if post.user_id != recipient_id:
                raise BadRequestError("Recipient is not the author of this post")
            thread = session.get(Thread, post.thread_id)
            forum = session.get(ForumStructure, thread.structure_id)
            if not forum.tipping_enabled:
                raise FeatureDisabledError("Tipping is disabled in this forum")
            forum_id = forum.id

        if sender_id == recipient_id:
            raise BadRequestError("You cannot tip yourself")

        sender = _load_sender(session, sender_id)
        recipient = session.get(User, recipient_id)
        if recipient is None:
            raise NotFoundError("Recipient")

        _check_tip_amount(cache, sender, micro)
        _check_tip_pacing(session, cache, sender_id, micro)

        # The fee is burned: the sender pays the full amount
        fee = int(micro * economy.tipping.fee_percentage / 100)
        metadata = {"post_id": post_id, "message": message, "fee": fee}
        sent = wallet_service.debit(
            session, sender_id, micro, "tip_send",
            to_user_id=recipient_id, reference=tip_id, metadata=metadata,
        )
        wallet_service.credit(
            session, recipient_id, micro - fee, "tip_receive",
            economy=economy, from_user_id=sender_id, reference=tip_id, metadata=metadata,
        )
        if post is not None:
            post.tip_total += micro - fee

        recipient.clout += 1
        xp_service.award_xp_in_session(
            session, cache, sender_id, XpAction.TIP_GIVEN,
            metadata={"tip_id": tip_id}, forum_id=forum_id,
        )
        xp_service.award_xp_in_session(
            session, cache, recipient_id, XpAction.TIP_RECEIVED,
            metadata={"tip_id": tip_id}, forum_id=forum_id,
        )
        notify(
            session, recipient_id, NotificationType.TIP_RECEIVED,
            f"{sender.username} tipped you {format_dgt(micro)}",
            body=message,
            data={"tip_id": tip_id, "post_id": post_id, "from_user_id": sender_id},
        )
        balance = wallet_service.get_or_create_wallet(session, sender_id).balance

    logger.info("Tip %s: %d → %d %s", tip_id, sender_id, recipient_id, format_dgt(micro))
    return {
        "tip_id": tip_id,
        "transaction_id": sent.id,
        "recipient_id": recipient_id,
        "post_id": post_id,
        "amount": str(from_micro(micro)),
        "balance": str(from_micro(balance)),
    }


# ---------------------------------------------------------------------------
# Rain
# ---------------------------------------------------------------------------
def _active_candidates(
    session: Session, sender_id: int, window_minutes: int,
) -> list[int]:
    since = utcnow() - timedelta(minutes=window_minutes)
    return list(session.scalars(
        select(User.id).where(
            User.id != sender_id,
            User.is_banned.is_(False),
            User.last_seen_at >= since,
        )
    ).all())


def make_it_rain(
    engine: Engine,
    cache: ConfigCache,
    sender_id: int,
    amount: Decimal,
    recipient_count: int,
    *,
    source: str = "shoutbox",
) -> dict[str, Any]:
    """Split *amount* equally across up to *recipient_count* active users.

    The per-user share is floored to the micro unit; the remainder is never
    debited from the sender.
    """
    economy = cache.economy()
    wallet_service.ensure_economy_open(economy)
    rain = economy.rain
    if not rain.enabled or not cache.is_feature_enabled("rain"):
        raise FeatureDisabledError("Rain is disabled")
    if not 1 <= recipient_count <= rain.max_recipients:
        raise ValidationError(f"Recipient count must be between 1 and {rain.max_recipients}")

    micro = to_micro(amount)
    if micro < to_micro(rain.min_amount):
        raise ValidationError(f"Minimum rain amount is {rain.min_amount} DGT")

    rain_id = f"rain_{uuid.uuid4().hex}"
    with get_session(engine) as session:
        sender = _load_sender(session, sender_id)

        elapsed = _seconds_since(
            session,
            select(func.max(RainEvent.created_at)).where(RainEvent.user_id == sender_id),
        )
        if elapsed is not None and elapsed < rain.cooldown_seconds:
            raise RateLimitError(
                "Rain is on cooldown",
                retry_after=max(1, int(rain.cooldown_seconds - elapsed) + 1),
            )

        candidates = _active_candidates(session, sender_id, rain.active_window_minutes)
        if not candidates:
            raise BusinessRuleViolationError("No active users to rain on")
        recipients = random.sample(candidates, min(recipient_count, len(candidates)))

        per_user = micro // len(recipients)
        if per_user <= 0:
            raise ValidationError("Amount is too small to split")
        total = per_user * len(recipients)

        wallet_service.debit(
            session, sender_id, total, "rain_send",
            reference=rain_id, metadata={"recipients": recipients, "source": source},
        )
        for recipient_id in recipients:
            wallet_service.credit(
                session, recipient_id, per_user, "rain_receive",
                economy=economy, from_user_id=sender_id, reference=rain_id,
            )
            notify(
                session, recipient_id, NotificationType.RAIN_RECEIVED,
                f"{sender.username} made it rain: you caught {format_dgt(per_user)}",
                data={"rain_id": rain_id, "from_user_id": sender_id},
            )

        event = RainEvent(
            user_id=sender_id,
            amount=total,
            recipient_count=len(recipients),
            per_user_amount=per_user,
            source=source,
            recipient_ids=recipients,
        )
        session.add(event)
        session.flush()
        event_id = event.id

    logger.info(
        "Rain %s by user %d: %s to %d users", rain_id, sender_id, format_dgt(total), len(recipients),
    )
    return {
        "rain_id": rain_id,
        "event_id": event_id,
        "amount": str(from_micro(total)),
        "per_user_amount": str(from_micro(per_user)),
        "recipients": recipients,
    }


def get_recent_rain_events(
    engine: Engine, *, limit: int = 20, offset: int = 0,
) -> list[dict[str, Any]]:
    with get_session(engine) as session:
        rows = session.execute(
            select(RainEvent, User.username)
            .join(User, User.id == RainEvent.user_id)
            .order_by(RainEvent.created_at.desc(), RainEvent.id.desc())
            .offset(offset)
            .limit(limit)
        ).all()
        return [
            {
                "id": ev.id,
                "user_id": ev.user_id,
                "username": username,
                "amount": str(from_micro(ev.amount)),
                "per_user_amount": str(from_micro(ev.per_user_amount)),
                "recipient_count": ev.recipient_count,
                "source": ev.source,
                "created_at": ev.created_at.isoformat() if ev.created_at else None,
            }
            for ev, username in rows
        ]
