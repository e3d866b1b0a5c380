"""
degentalk.database.engine — Database Connection & Async Helper
================================================================

SQLAlchemy + psycopg2 is **synchronous**.  FastAPI route handlers declared
with ``def`` already run on Starlette's thread pool; ``async`` code paths
(the CCPayment client, the rate limiter) hand sync DB work to a thread via
:func:`run_db` so the event loop stays free.

Usage::

    from degentalk.database.engine import create_db_engine, init_db, run_db

    engine = create_db_engine()
    init_db(engine)

    balance = await run_db(wallet_service.get_balance, engine, user_id)
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session

from degentalk.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine() -> Engine:
    """Engine for ``DATABASE_URL`` with pre-ping and hourly connection recycling.

    Pool sizing is read from ``DB_POOL_SIZE`` / ``DB_MAX_OVERFLOW`` with
    defaults of 5 persistent and 10 overflow connections.

    Raises
    ------
    RuntimeError
        If ``DATABASE_URL`` is not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Put a PostgreSQL URL in .env (see .env.example)."
        )

    engine = create_engine(
        url,
        echo=False,
        pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
        pool_pre_ping=True,
        pool_timeout=10,
        pool_recycle=3600,
    )
    logger.info("Connected engine to %s/%s", engine.url.host, engine.url.database)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables and seed defaults.

    Safe to call on every startup.  In production the schema is managed by
    Alembic (``alembic upgrade head``); ``create_all`` remains as a safety
    net for dev/test environments.
    """
    Base.metadata.create_all(engine)
    logger.info("Schema ready (%d tables)", len(Base.metadata.tables))

    from degentalk.database.seed import seed_all

    seed_all(engine)


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine):
    """Unit of work: commit when the block exits cleanly, roll back when it raises.

    Objects stay loaded after commit, so services may return ORM rows.

    Usage::

        with get_session(engine) as session:
            session.add(Tag(name="alpha", slug="alpha"))
    """
    session = Session(engine, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Await a blocking service call from async code via :func:`asyncio.to_thread`."""
    return await asyncio.to_thread(func, *args, **kwargs)
