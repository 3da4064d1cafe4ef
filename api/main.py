"""
api/main.py -- FastAPI application entry point for SupportDesk.

Identity and session backend: OIDC login, cross-origin session claim, and
the per-user credential vault, exposed under /api/v1.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- credentialed CORS for CLIENT_ORIGIN only
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (settings, user directory, coordination store,
identity strategy, session manager, vault controller, purge task) and
shutdown (cancel purge task, close live sockets, identity client,
coordination store, directory) symmetrically.
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
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.ws import router as ws_router
from auth.connections import ConnectionRegistry
from auth.oidc import build_identity_strategy
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.token_vault import TokenVaultController
from auth.vault import EncryptionVault
from coordination.store import MemoryCoordinationStore, build_store
from core.config import get_settings
from core.errors import SupportDeskError

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("supportdesk.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: float) -> None:
    """Drop expired keys from the in-process coordination store.

    Every login leaves auth_state and session_transfer keys behind unless
    they are taken, and an idle session key is only removed when read after
    expiry. Redis expires keys itself, so this runs for the memory backend
    only. CancelledError from task.cancel() on shutdown ends the loop.
    """
    while True:
        await asyncio.sleep(interval)
        removed = app.state.coordination.purge_expired()
        if removed:
            logger.debug("Purged %d expired coordination key(s)", removed)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. User directory and coordination store -- no dependencies.
      2. Identity strategy -- for OIDC this fetches the discovery document.
         A discovery failure propagates and the server refuses to start.
      3. Session manager, then the vault controller that stages plaintext
         through it.
      4. Purge task last, only for the memory backend.
    """
    logger.info("SupportDesk API starting up (environment=%s)", settings.environment)
    app.state.settings = settings
    app.state.user_store = UserStore(settings.db_url)
    logger.info("User directory initialized (%d users)", app.state.user_store.count_users())
    app.state.coordination = build_store(settings.redis_url)
    app.state.identity = await build_identity_strategy(settings)
    app.state.connections = ConnectionRegistry()
    app.state.sessions = SessionManager(
        settings,
        app.state.coordination,
        app.state.user_store,
        app.state.identity,
        app.state.connections,
    )
    app.state.token_vault = TokenVaultController(
        EncryptionVault(settings.vault_kdf_iterations),
        app.state.user_store,
        app.state.sessions,
        strict_revoke=settings.vault_strict_revoke,
    )
    logger.info(
        "Auth initialized (identity=%s)",
        app.state.identity.name if app.state.identity else "unconfigured",
    )
    app.state.purge_task = None
    if isinstance(app.state.coordination, MemoryCoordinationStore):
        app.state.purge_task = asyncio.create_task(
            _purge_loop(app, settings.coordination_purge_interval_seconds)
        )

    yield

    # Shutdown
    if app.state.purge_task is not None:
        app.state.purge_task.cancel()
    await app.state.connections.close_all()
    if app.state.identity is not None:
        await app.state.identity.close()
    await app.state.coordination.close()
    app.state.user_store.close()
    logger.info("SupportDesk API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SupportDesk API",
    description="Identity, session and credential-vault service for the SupportDesk client.",
    version=VERSION,
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.allowed_hosts,
)

# The client origin calls with credentials (the session cookie), so the
# origin list must be explicit; "*" is not allowed with credentials.
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.client_origin.rstrip("/")],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Every request passes through
# this coroutine before reaching any route handler. Query strings are not
# logged: the callback carries the authorization code and state there.
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
app.include_router(ws_router, prefix="/api/v1")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope
# ({"success": false, "error": {code, message}}) so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump(),
    )


@app.exception_handler(SupportDeskError)
async def domain_error_handler(request: Request, exc: SupportDeskError) -> JSONResponse:
    """Render a domain error with the status and code its class declares."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return _error(exc.status_code, exc.code, exc.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.")
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies and query params are a 400 validation_error, like missing fields."""
    return _error(400, "validation_error", "Request validation failed.")


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Structured error for framework-raised HTTP errors (404 route, 405 method, ...)."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the server log only, never
    to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> JSONResponse:
    """Report liveness of the API, the user directory and the coordination store."""
    components: dict[str, str] = {}
    try:
        components["directory"] = "ok" if await run_in_threadpool(request.app.state.user_store.ping) else "error"
    except Exception:
        logger.exception("Directory health check failed")
        components["directory"] = "error"
    try:
        components["coordination"] = "ok" if await request.app.state.coordination.ping() else "error"
    except Exception:
        logger.exception("Coordination store health check failed")
        components["coordination"] = "error"
    healthy = all(v == "ok" for v in components.values())
    body = HealthResponse(status="ok" if healthy else "degraded", version=VERSION, components=components)
    return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())
