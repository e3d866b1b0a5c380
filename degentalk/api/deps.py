"""
degentalk.api.deps — FastAPI dependency injection
===================================================
"""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from degentalk.config import DegentalkConfig, load_ccpayment_credentials, load_config
from degentalk.database.engine import create_db_engine, get_session
from degentalk.database.models import User, UserRole, as_utc, utcnow
from degentalk.engine.cache import ConfigCache
from degentalk.errors import UserBannedError
from degentalk.services import user_service
from degentalk.services.ccpayment import CCPaymentClient

_WEAK_SECRETS = frozenset({
    "degentalk-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"
TOKEN_TTL = timedelta(hours=12)
# last_seen_at is written at most this often per user
LAST_SEEN_RESOLUTION = timedelta(seconds=60)
STAFF_ROLES = frozenset({UserRole.ADMIN.value, UserRole.MODERATOR.value})


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------
@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> DegentalkConfig:
    return load_config()


@lru_cache(maxsize=1)
def get_cache() -> ConfigCache:
    cache = ConfigCache(get_engine())
    cache.load_all()
    return cache


def get_ccpayment_client(
    cfg: DegentalkConfig = Depends(get_config),
) -> CCPaymentClient:
    creds = load_ccpayment_credentials()
    return CCPaymentClient(creds.app_id, creds.app_secret, cfg.ccpayment_api_url)


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------
def create_access_token(user: User) -> str:
    payload = {
        "sub": str(user.id),
        "username": user.username,
        "role": user.role,
        "exp": datetime.now(UTC) + TOKEN_TTL,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def _decode_bearer(authorization: str | None) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    if not str(payload.get("sub", "")).isdigit():
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    return payload


def _load_current_user(engine: Engine, user_id: int) -> dict:
    """Role and ban state are read from the database, not the token."""
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Unknown user")
        try:
            user_service.ensure_not_banned(session, user)
        except UserBannedError:
            raise HTTPException(status.HTTP_403_FORBIDDEN, "Account is banned")
        now = utcnow()
        last_seen = as_utc(user.last_seen_at)
        if last_seen is None or now - last_seen >= LAST_SEEN_RESOLUTION:
            user.last_seen_at = now
        return {
            "sub": str(user.id),
            "id": user.id,
            "username": user.username,
            "role": user.role,
        }


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------
def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
    engine: Engine = Depends(get_engine),
) -> dict:
    """Validate the JWT and return the caller.  401 if invalid, 403 if banned."""
    payload = _decode_bearer(authorization)
    return _load_current_user(engine, int(payload["sub"]))


def get_optional_user(
    authorization: Annotated[str | None, Header()] = None,
    engine: Engine = Depends(get_engine),
) -> dict | None:
    if not authorization:
        return None
    return get_current_user(authorization, engine)


def get_current_moderator(user: dict = Depends(get_current_user)) -> dict:
    if user["role"] not in STAFF_ROLES:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Moderator access required")
    return user


def get_current_admin(
    user: dict = Depends(get_current_user),
    cfg: DegentalkConfig = Depends(get_config),
) -> dict:
    if user["role"] != cfg.admin_role:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return user
