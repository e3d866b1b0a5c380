"""
degentalk.services.user_service — Accounts, Passwords & Bans
==============================================================

Passwords are hashed with bcrypt.  Ban state lives on ``users.is_banned``
with history in ``user_bans``; expired bans are lifted lazily the next
time the user acts.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

import bcrypt
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from degentalk.database.engine import get_session
from degentalk.database.models import User, UserBan, UserRole, as_utc, utcnow
from degentalk.engine.xp_actions import XpAction
from degentalk.errors import (
    ConflictError,
    NotFoundError,
    UnauthorizedError,
    UserBannedError,
    ValidationError,
)
from degentalk.services import xp_service

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from degentalk.engine.cache import ConfigCache

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = 12
USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,50}$")
PROFILE_FIELDS = ("bio", "avatar_url")


def hash_password(plain: str, rounds: int = BCRYPT_ROUNDS) -> str:
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def check_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def user_to_dict(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "role": user.role,
        "xp": user.xp,
        "level": user.level,
        "clout": user.clout,
        "bio": user.bio,
        "avatar_url": user.avatar_url,
        "is_banned": user.is_banned,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


# ---------------------------------------------------------------------------
# Registration & login
# ---------------------------------------------------------------------------
def create_user(
    engine: Engine,
    *,
    username: str,
    email: str,
    password: str,
    role: str = UserRole.USER.value,
    bcrypt_rounds: int = BCRYPT_ROUNDS,
) -> User:
    if not USERNAME_RE.match(username):
        raise ValidationError(
            "Username must be 3-50 characters of letters, digits or underscores",
        )
    if len(password) < 8:
        raise ValidationError("Password must be at least 8 characters")
    if role not in {r.value for r in UserRole}:
        raise ValidationError(f"Unknown role '{role}'")

    with get_session(engine) as session:
        clash = session.scalar(
            select(User).where(
                or_(User.username == username, User.email == email.lower())
            )
        )
        if clash is not None:
            field = "Username" if clash.username == username else "Email"
            raise ConflictError(f"{field} is already taken")

        user = User(
            username=username,
            email=email.lower(),
            password_hash=hash_password(password, bcrypt_rounds),
            role=role,
            last_seen_at=utcnow(),
        )
        session.add(user)
        session.flush()
        session.refresh(user)
        logger.info("Registered user %d (%s)", user.id, username)
        return user


def authenticate(engine: Engine, username: str, password: str) -> User:
    """Return the user for valid credentials, else raise 401."""
    with get_session(engine) as session:
        user = session.scalar(select(User).where(User.username == username))
        if user is None or not check_password(password, user.password_hash):
            raise UnauthorizedError("Invalid username or password")
        ensure_not_banned(session, user)
        user.last_seen_at = utcnow()
        return user


def get_user(engine: Engine, user_id: int) -> User:
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User")
        return user


def update_profile(
    engine: Engine, cache: ConfigCache, user_id: int, **fields: Any,
) -> User:
    """Update profile fields; a first fully filled profile earns XP."""
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User")
        for key, value in fields.items():
            if key in PROFILE_FIELDS and value is not None:
                setattr(user, key, value)
        if all(getattr(user, key) for key in PROFILE_FIELDS):
            xp_service.award_xp_in_session(session, cache, user_id, XpAction.PROFILE_COMPLETED)
        return user


# ---------------------------------------------------------------------------
# Bans
# ---------------------------------------------------------------------------
def ensure_not_banned(session: Session, user: User) -> None:
    """Raise :class:`UserBannedError` if *user* is under an active ban."""
    if not user.is_banned:
        return
    active = session.scalar(
        select(UserBan)
        .where(UserBan.user_id == user.id, UserBan.lifted_at.is_(None))
        .order_by(UserBan.created_at.desc(), UserBan.id.desc())
    )
    now = utcnow()
    if active is not None and active.expires_at is not None and as_utc(active.expires_at) <= now:
        active.lifted_at = now
        user.is_banned = False
        logger.info("Ban on user %d expired; lifted", user.id)
        return
    raise UserBannedError("Your account is banned")
