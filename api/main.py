"""
api/main.py -- FastAPI application entry point for Eventgate.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware    -- origins and preflight max-age from Settings
  2. SlowAPIMiddleware -- enforces per-route rate limits from api.limiter

Lifespan builds the stores and services once and shares them through
app.state. Shutdown cancels the code purge task and closes both stores.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from starlette.exceptions import HTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.events import router as events_router
from auth.delivery import build_delivery
from auth.service import AuthService
from auth.store import AccountStore
from core.config import get_settings
from core.errors import AppError, AuthenticationError, AuthFailure, LockedError, ValidationError
from events.service import EventService
from events.store import EventStore

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("eventgate.api")

settings = get_settings()

# Code-related failures share one public error code so a client cannot tell
# an unknown email from a wrong, expired or exhausted code.
_CODE_FAILURES = {
    AuthFailure.not_found,
    AuthFailure.expired,
    AuthFailure.attempts_exhausted,
    AuthFailure.mismatch,
}

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired one-time codes every 6 hours.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and ends the loop.
    """
    while True:
        await asyncio.sleep(6 * 60 * 60)
        removed = app.state.auth_service.ledger.purge_expired()
        logger.info("Purged %d expired one-time codes", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def build_services(
    account_store: AccountStore,
    event_store: EventStore,
    delivery=None,
) -> tuple[AuthService, EventService]:
    """Wire the two services together.

    EventService claims pending invites through an AuthService activation
    hook, so auth/ never imports events/.
    """
    auth_service = AuthService(account_store, delivery=delivery or build_delivery(settings))
    event_service = EventService(event_store, account_store)
    auth_service.add_activation_hook(event_service.claim_pending_invites)
    return auth_service, event_service


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build stores and services on startup; tear them down on shutdown."""
    logger.info("Eventgate API starting up")
    app.state.account_store = AccountStore()
    app.state.event_store = EventStore()
    app.state.auth_service, app.state.event_service = build_services(
        app.state.account_store, app.state.event_store
    )
    logger.info("Stores initialized (invite policy: %s)", settings.invite_policy)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.account_store.close()
    app.state.event_store.close()
    logger.info("Eventgate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Eventgate API",
    description="Accounts with email verification, and events with invited participants.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    expose_headers=["X-Total-Count", "X-Page-Count"],
    max_age=settings.cors_max_age(),
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(events_router, prefix="/api/v1", tags=["Events"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render a typed service error.

    AuthenticationError reasons are narrowed to public codes here:
    credential failures become "bad_credentials", code failures become
    "invalid_code", an expired session becomes "session_expired" and any
    other session failure keeps the generic "unauthenticated".
    """
    code, detail = exc.code, exc.detail
    if isinstance(exc, AuthenticationError):
        if exc.reason in _CODE_FAILURES:
            code = "invalid_code"
        elif exc.reason is AuthFailure.invalid_credentials:
            code = "bad_credentials"
        elif exc.reason is AuthFailure.session_expired:
            code = "session_expired"
    elif isinstance(exc, ValidationError) and exc.field and detail is None:
        detail = exc.field
    elif isinstance(exc, LockedError):
        detail = exc.lock_expires_at.isoformat()

    response = _error(exc.status_code, code, exc.message, detail)
    if isinstance(exc, LockedError):
        response.headers["Retry-After"] = str(exc.retry_after)
    if request.url.path.endswith("/auth/login"):
        response.headers["Cache-Control"] = "no-store"  # [M5]
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Starlette base class, so unmatched routes (404) and methods (405) land here too."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) and never rate limited.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and a database round-trip per store."""
    database = "ok"
    for store in (request.app.state.account_store, request.app.state.event_store):
        try:
            with store.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception:
            logger.exception("Health check: database unreachable")
            database = "error"
    return HealthResponse(version=VERSION, components={"app": "ok", "database": database})
