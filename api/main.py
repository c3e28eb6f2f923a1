"""
api/main.py -- FastAPI application entry point for Atrium.

Exposes the auth flows over HTTP. Every auth endpoint answers with the same
JSON envelope, {"code", "status", "message", "data"?}, including the errors
produced outside the flows (validation, rate limits, unhandled faults).

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware    -- adds CORS headers for the frontend origin
  2. SlowAPIMiddleware -- enforces per-route rate limits from api.limiter
  3. SessionMiddleware -- authlib keeps the OAuth state value here

Lifespan handles startup (stores, mail outbox, flows, sweep task) and
shutdown (cancel sweep task, stop outbox, close DB connections) symmetrically.
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
from starlette.exceptions import HTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import Envelope, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.exchange import ExchangeTokenStore
from auth.flows import AuthFlows
from auth.oauth import oauth as oauth_client
from auth.store import TokenStore, UserStore
from core.config import get_settings
from mail.mailer import SMTPMailer
from mail.outbox import MailOutbox

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("atrium.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval: float) -> None:
    """Drop expired exchange codes and one-time tokens every `interval` seconds.

    Expiry is already enforced on every read; the sweep only bounds memory and
    table size. A failed pass is logged and the loop keeps going.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            app.state.exchange_store.sweep()
            purged = app.state.token_store.purge_expired()
            if purged:
                logger.info("Purged %d expired one-time tokens", purged)
        except Exception:
            logger.exception("Sweep pass failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the shared collaborators and tear them down in reverse order.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The outbox worker must start inside the running loop, which is
    why it lives here and not at import time.
    """
    settings = get_settings()
    logger.info("Atrium API starting up")

    app.state.user_store = UserStore(db_url=settings.database_url)
    app.state.token_store = TokenStore(db_url=settings.database_url)
    app.state.exchange_store = ExchangeTokenStore(
        ttl_seconds=settings.exchange_token_ttl_seconds,
        grace_seconds=settings.exchange_token_grace_seconds,
    )
    mailer = SMTPMailer(settings)
    if not mailer.is_configured:
        logger.warning("SMTP is not configured -- verification and reset emails will not be delivered")
    app.state.outbox = MailOutbox(mailer)
    app.state.outbox.start()
    app.state.flows = AuthFlows(
        users=app.state.user_store,
        tokens=app.state.token_store,
        exchange_store=app.state.exchange_store,
        mailer=mailer,
        outbox=app.state.outbox,
        settings=settings,
    )
    app.state.oauth = oauth_client
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, settings.sweep_interval_seconds))
    logger.info("Auth initialized (users=%d)", app.state.user_store.count_users())

    yield

    app.state.sweep_task.cancel()
    await app.state.outbox.stop()
    app.state.token_store.close()
    app.state.user_store.close()
    logger.info("Atrium API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Atrium Auth API",
    description="Credential and OAuth sign-in, email verification and password reset.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted({"http://localhost:3000", _settings.frontend_url}),
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# authlib stores the OAuth state value in the session between the provider
# redirect and the callback (CSRF protection for the authorization code flow).
app.add_middleware(SessionMiddleware, secret_key=_settings.secret_key)

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

app.include_router(auth_router, prefix="/api/auth/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same Envelope so clients parse errors uniformly.
# ---------------------------------------------------------------------------


def _envelope_response(code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=code,
        content=Envelope(code=code, status="error", message=message).model_dump(exclude_none=True),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _envelope_response(429, "Too many requests. Please try again later.")
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed JSON or an oversized field. Detail goes to the log, not the client."""
    logger.info("Request validation failed on %s: %s", request.url.path, exc.errors())
    return _envelope_response(400, "Invalid request")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Route-raised HTTPException and Starlette's own 404/405 use the same envelope."""
    response = _envelope_response(exc.status_code, str(exc.detail))
    for name, value in (exc.headers or {}).items():
        response.headers[name] = value
    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _envelope_response(500, "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit applied -- health checks must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=VERSION)
