"""
degentalk.api.main — FastAPI application entry point
======================================================

Run with::

    uvicorn degentalk.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from degentalk.config import configure_logging  # noqa: E402

configure_logging()

from degentalk.api.auth import router as auth_router  # noqa: E402
from degentalk.api.deps import get_cache, get_ccpayment_client, get_engine  # noqa: E402
from degentalk.api.rate_limit import configure_rate_limiter  # noqa: E402
from degentalk.api.routes.admin import router as admin_router  # noqa: E402
from degentalk.api.routes.ccpayment import router as ccpayment_router  # noqa: E402
from degentalk.api.routes.forum import router as forum_router  # noqa: E402
from degentalk.api.routes.gamification import router as gamification_router  # noqa: E402
from degentalk.api.routes.notifications import router as notifications_router  # noqa: E402
from degentalk.api.routes.public import router as public_router  # noqa: E402
from degentalk.api.routes.social import router as social_router  # noqa: E402
from degentalk.api.routes.wallet import router as wallet_router  # noqa: E402
from degentalk.database.engine import init_db  # noqa: E402
from degentalk.engine.cache import ConfigCache  # noqa: E402
from degentalk.errors import AppError, ErrorCode, RateLimitError, ValidationError  # noqa: E402
from degentalk.services.ccpayment import CCPaymentClient  # noqa: E402
from degentalk.services.log_buffer import install_handler  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown: schema, config cache, NOTIFY listener, rate limiter."""
    # Uvicorn reconfigures logging on start, so the ring handler goes on here.
    install_handler()

    engine = get_engine()
    init_db(engine)
    cache = get_cache()
    cache.start_listener()
    configure_rate_limiter(engine=engine)
    logger.info("Degentalk API started — engine ready (%s)", engine.url.database)
    yield
    cache.stop_listener()
    logger.info("Degentalk API shutting down")


app = FastAPI(
    title="Degentalk API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    headers = None
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.http_status, headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    err = ValidationError(
        "Request validation failed",
        details=[
            {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
            for e in exc.errors()
        ],
    )
    return JSONResponse(err.to_dict(), status_code=400)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    err = AppError("Internal server error", code=ErrorCode.SERVER_ERROR)
    return JSONResponse(err.to_dict(), status_code=500)


# Mount routers
app.include_router(auth_router, prefix="/api")
app.include_router(public_router, prefix="/api")
app.include_router(forum_router, prefix="/api")
app.include_router(wallet_router, prefix="/api")
app.include_router(ccpayment_router, prefix="/api")
app.include_router(gamification_router, prefix="/api")
app.include_router(social_router, prefix="/api")
app.include_router(notifications_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}


@app.get("/api/health/listener")
def listener_health(cache: ConfigCache = Depends(get_cache)):
    """Whether the config-cache NOTIFY listener is connected."""
    return {"healthy": cache.listener_healthy}


@app.get("/api/health/ccpayment")
async def ccpayment_health(client: CCPaymentClient = Depends(get_ccpayment_client)):
    """Whether CCPayment accepts our credentials."""
    return {"healthy": await client.health()}
