"""
degentalk.api.rate_limit — Sliding-Window Mutation Rate Limiting
==================================================================

Two throttles share one DB-backed limiter:

* **admin** — 30 mutations per minute per admin.
* **wallet** — DGT-moving requests (tips, rain, transfers, withdrawals)
  per user, capped by the economy's ``rate_limits.tips_per_minute``.

Events live in ``rate_limit_events`` keyed by ``"<scope>:<user id>"`` so
limits survive restarts and are shared between API workers.  Exceeding a
limit returns HTTP 429 with a ``Retry-After`` header.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import Engine, delete, func, select
from sqlalchemy.orm import Session

from degentalk.api.deps import get_cache, get_current_admin, get_current_user
from degentalk.database.models import RateLimitEvent, as_utc, utcnow
from degentalk.engine.cache import ConfigCache

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT = 30
DEFAULT_WINDOW_SECONDS = 60

_MUTATION_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class SlidingWindowLimiter:
    """Counts events per bucket over the trailing ``window_seconds``."""

    def __init__(
        self,
        max_requests: int = DEFAULT_RATE_LIMIT,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        *,
        engine: Engine,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.engine = engine

    def _prune(self, session: Session, bucket: str, cutoff) -> None:
        session.execute(
            delete(RateLimitEvent).where(
                RateLimitEvent.bucket == bucket,
                RateLimitEvent.timestamp < cutoff,
            )
        )

    def check(self, bucket: str, *, max_requests: int | None = None) -> tuple[bool, dict[str, Any]]:
        """Return ``(allowed, info)``; info has ``remaining``, ``reset``
        (seconds until a slot frees up) and ``limit``."""
        limit = max_requests or self.max_requests
        now = utcnow()
        cutoff = now - timedelta(seconds=self.window_seconds)

        with Session(self.engine) as session:
            self._prune(session, bucket, cutoff)
            timestamps = session.scalars(
                select(RateLimitEvent.timestamp)
                .where(RateLimitEvent.bucket == bucket)
                .order_by(RateLimitEvent.timestamp.asc())
            ).all()
            session.commit()

        count = len(timestamps)
        if count >= limit:
            oldest = as_utc(timestamps[count - limit])
            reset = (oldest + timedelta(seconds=self.window_seconds) - now).total_seconds()
            return False, {"remaining": 0, "reset": max(1, int(reset) + 1), "limit": limit}

        return True, {"remaining": limit - count, "reset": self.window_seconds, "limit": limit}

    def record(self, bucket: str, *, max_requests: int | None = None) -> dict[str, Any]:
        limit = max_requests or self.max_requests
        now = utcnow()
        cutoff = now - timedelta(seconds=self.window_seconds)

        with Session(self.engine) as session:
            self._prune(session, bucket, cutoff)
            session.add(RateLimitEvent(bucket=bucket, timestamp=now))
            session.flush()
            count = session.scalar(
                select(func.count()).select_from(RateLimitEvent)
                .where(RateLimitEvent.bucket == bucket)
            ) or 0
            session.commit()

        return {"remaining": max(0, limit - count), "reset": self.window_seconds, "limit": limit}

    def reset(self, bucket: str | None = None) -> None:
        """Clear state for *bucket*, or for every bucket."""
        with Session(self.engine) as session:
            query = delete(RateLimitEvent)
            if bucket is not None:
                query = query.where(RateLimitEvent.bucket == bucket)
            session.execute(query)
            session.commit()


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------
_limiter: SlidingWindowLimiter | None = None


def get_rate_limiter() -> SlidingWindowLimiter:
    if _limiter is None:
        raise RuntimeError("Rate limiter not configured — call configure_rate_limiter() first")
    return _limiter


def configure_rate_limiter(*, engine: Engine) -> None:
    global _limiter
    _limiter = SlidingWindowLimiter(
        max_requests=DEFAULT_RATE_LIMIT,
        window_seconds=DEFAULT_WINDOW_SECONDS,
        engine=engine,
    )


async def _enforce(bucket: str, max_requests: int, what: str) -> None:
    limiter = get_rate_limiter()
    allowed, info = await asyncio.to_thread(limiter.check, bucket, max_requests=max_requests)
    if not allowed:
        logger.warning(
            "Rate limit exceeded for %s: %d requests per %ds",
            bucket, max_requests, limiter.window_seconds,
        )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "rate_limit_exceeded",
                "message": f"Rate limit exceeded: {max_requests} {what} per minute.",
                "retry_after": info["reset"],
            },
            headers={"Retry-After": str(info["reset"])},
        )
    await asyncio.to_thread(limiter.record, bucket, max_requests=max_requests)


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------
async def rate_limited_admin(
    request: Request,
    admin: dict = Depends(get_current_admin),
) -> dict:
    """Admin guard plus the per-admin mutation limit.

    Safe methods (GET/HEAD/OPTIONS) are not counted.
    """
    if request.method in _MUTATION_METHODS:
        await _enforce(f"admin:{admin['sub']}", DEFAULT_RATE_LIMIT, "mutations")
    return admin


async def rate_limited_wallet_user(
    request: Request,
    user: dict = Depends(get_current_user),
    cache: ConfigCache = Depends(get_cache),
) -> dict:
    """User guard plus the per-user DGT movement limit."""
    if request.method in _MUTATION_METHODS:
        per_minute = cache.economy().rate_limits.tips_per_minute
        await _enforce(f"wallet:{user['sub']}", per_minute, "wallet actions")
    return user
