"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of degentalk.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from decimal import Decimal  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402

from degentalk.database.engine import get_session  # noqa: E402
from degentalk.database.models import Base  # noqa: E402
from degentalk.database.seed import seed_all  # noqa: E402
from degentalk.engine.cache import ConfigCache  # noqa: E402
from degentalk.engine.economy import to_micro  # noqa: E402

_jsonb_sqlite_registered = False

TEST_APP_ID = "test-app-id"
TEST_APP_SECRET = "test-app-secret"


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


@pytest.fixture
def db_engine() -> Engine:
    """Create a seeded in-memory SQLite engine with all Degentalk tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` in the rate limiter and ``run_db``).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    seed_all(engine)
    return engine


@pytest.fixture
def cache(db_engine: Engine) -> ConfigCache:
    cache = ConfigCache(db_engine)
    cache.load_all()
    return cache


# ---------------------------------------------------------------------------
# Users & money
# ---------------------------------------------------------------------------
@pytest.fixture
def make_user(db_engine: Engine):
    """Factory: ``make_user("alice", role="admin")`` → detached :class:`User`."""
    from degentalk.services.user_service import create_user

    def _make(username: str, role: str = "user"):
        return create_user(
            db_engine,
            username=username,
            email=f"{username}@example.com",
            password="correct-horse-battery",
            role=role,
            bcrypt_rounds=4,
        )

    return _make


@pytest.fixture
def admin(make_user):
    return make_user("admin_user", role="admin")


@pytest.fixture
def fund(db_engine: Engine):
    """Factory: credit *amount* DGT to a user outside any business rule."""
    from degentalk.services import wallet_service

    def _fund(user_id: int, amount: str | int | Decimal) -> None:
        with get_session(db_engine) as session:
            wallet_service.credit(session, user_id, to_micro(amount), "admin_credit")

    return _fund


@pytest.fixture
def economy_override(db_engine: Engine, cache: ConfigCache, admin):
    """Factory: override one economy section; the bound cache refreshes on commit."""
    from degentalk.services import admin_service

    def _override(section: str, value: dict) -> None:
        admin_service.set_economy_override(
            db_engine, section=section, value=value, actor_id=admin.id,
        )

    return _override


@pytest.fixture
def forum(db_engine: Engine, cache: ConfigCache, admin) -> dict:
    """A zone with one forum under it; returns the forum row as a dict."""
    from degentalk.services import admin_service

    zone = admin_service.create_structure(
        db_engine, name="Market Talk", type="zone", actor_id=admin.id,
    )
    return admin_service.create_structure(
        db_engine, name="Alpha Calls", type="forum", parent_id=zone["id"], actor_id=admin.id,
    )


def auth_headers(user) -> dict[str, str]:
    from degentalk.api.deps import create_access_token

    return {"Authorization": f"Bearer {create_access_token(user)}"}


# ---------------------------------------------------------------------------
# CCPayment
# ---------------------------------------------------------------------------
def ccpayment_transport(handler) -> httpx.MockTransport:
    """Wrap *handler(path, params)* → ``data`` dict in CCPayment's envelope."""
    import json

    def _respond(request: httpx.Request) -> httpx.Response:
        path = request.url.path.rsplit("/", 1)[-1]
        params = json.loads(request.content) if request.content else {}
        result = handler(path, params)
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json={"code": 10000, "msg": "success", "data": result})

    return httpx.MockTransport(_respond)


@pytest.fixture
def ccpayment_calls() -> list[tuple[str, dict]]:
    return []


@pytest.fixture
def ccpayment_client(ccpayment_calls):
    from degentalk.services.ccpayment import CCPaymentClient

    def _handler(path: str, params: dict):
        ccpayment_calls.append((path, params))
        if path == "getOrCreateAppDepositAddress":
            return {"address": "0xdeadbeef", "memo": ""}
        if path == "applyAppWithdrawToNetwork":
            return {"recordId": "rec_1"}
        if path == "checkWithdrawalAddressValidity":
            return {"addrIsValid": True}
        if path == "getCoinUSDTPrice":
            return {"prices": {str(c): "1" for c in params["coinIds"]}}
        if path == "getCoinList":
            return {"coins": [{"coinId": 1280, "symbol": "USDT"}]}
        if path == "getWithdrawFee":
            return {"fee": {"coinId": params["coinId"], "symbol": "USDT", "amount": "1.5"}}
        return {}

    return CCPaymentClient(
        TEST_APP_ID, TEST_APP_SECRET, "https://ccpayment.test",
        transport=ccpayment_transport(_handler),
    )


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------
@pytest.fixture
def client(db_engine: Engine, cache: ConfigCache, ccpayment_client):
    """TestClient wired to the in-memory DB.

    Not used as a context manager, so the lifespan (Postgres engine and
    NOTIFY listener) never runs.
    """
    from fastapi.testclient import TestClient

    from degentalk.api import deps
    from degentalk.api.main import app
    from degentalk.api.rate_limit import configure_rate_limiter
    from degentalk.config import DegentalkConfig

    config = DegentalkConfig(
        site_name="Degentalk",
        site_tagline="Where degens talk",
        api_port=8000,
        frontend_url="http://localhost:5173",
    )
    configure_rate_limiter(engine=db_engine)
    app.dependency_overrides[deps.get_engine] = lambda: db_engine
    app.dependency_overrides[deps.get_cache] = lambda: cache
    app.dependency_overrides[deps.get_config] = lambda: config
    app.dependency_overrides[deps.get_ccpayment_client] = lambda: ccpayment_client
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()
