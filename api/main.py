"""
api/main.py -- FastAPI application entry point for the watchlist auth service.

Exposes the session core (login, refresh, logout, revoke-all) over HTTP and
gives every other watchlist service one dependency, auth.dependencies.
get_current_principal, to protect its routes.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware        -- adds CORS headers for allowed browser origins
  2. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (settings, credential store, revocation cache,
session manager, purge task) and shutdown (cancel purge task, close stores)
symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.dependencies import http_error_for
from auth.errors import AuthError
from auth.session import SessionManager
from auth.store import CredentialStore
from cache.store import CacheUnavailableError, MemoryKeyValueStore, store_from_settings
from core.config import get_settings

API_VERSION = "0.3.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("watchlist.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------

_PURGE_INTERVAL_SECONDS = 10 * 60


async def _purge_loop(cache: MemoryKeyValueStore) -> None:
    """Drop expired revocation entries from the in-memory cache every 10 minutes.

    Redis expires keys itself; this loop only runs for the memory backend.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(_PURGE_INTERVAL_SECONDS)
        removed = cache.purge_expired()
        if removed:
            logger.debug("Purged %d expired revocation entries", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Settings first -- a bad configuration aborts startup before any
         connection is opened.
      2. Credential store and cache -- independent of each other.
      3. SessionManager last -- composed from both.
    A Redis outage at startup is logged, not fatal: the failure policy
    decides what happens to requests while the cache is down.
    """
    settings = get_settings()
    logger.info("Watchlist auth API starting up")
    app.state.settings = settings
    app.state.credentials = CredentialStore(settings.database_url)
    app.state.cache = store_from_settings(settings)
    try:
        app.state.cache.ping()
    except CacheUnavailableError:
        logger.warning("Revocation cache unreachable at startup (policy=%s)", settings.revocation_failure_policy)
    app.state.sessions = SessionManager.from_settings(
        settings,
        credentials=app.state.credentials,
        cache=app.state.cache,
    )
    logger.info(
        "Auth initialized (users=%d, hash=%s, jwt=%s, policy=%s)",
        app.state.credentials.count_users(),
        settings.password_hash_algorithm,
        settings.jwt_algorithm,
        settings.revocation_failure_policy,
    )
    purge_task = None
    if isinstance(app.state.cache, MemoryKeyValueStore):
        purge_task = asyncio.create_task(_purge_loop(app.state.cache))

    yield

    # Shutdown
    if purge_task is not None:
        purge_task.cancel()
    app.state.cache.close()
    app.state.credentials.close()
    logger.info("Watchlist auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Watchlist Auth API",
    description="Credential verification, session tokens and revocation for the watchlist service.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them: CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor. Every request passes through this coroutine before
# reaching any route handler. Only method and path are logged; headers (and
# with them bearer tokens) never are.
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


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    The field errors are reduced to their locations and messages. Pydantic's
    raw error list echoes the rejected input, which for these routes is a
    password or a token.
    """
    fields = "; ".join(f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg', '')}" for e in exc.errors())
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=fields,
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it. Headers (WWW-Authenticate, Retry-After)
    are carried over.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map an AuthError that escaped a route to the same response the dependencies give."""
    return await http_exception_handler(request, http_error_for(exc))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"], response_model=HealthResponse)
def health(request: Request) -> JSONResponse:
    """Return liveness plus the reachability of the database and revocation cache.

    Answers 503 with status "degraded" when either dependency is down.
    """
    components = {"app": "ok", "database": "ok", "cache": "ok"}
    try:
        request.app.state.credentials.ping()
    except SQLAlchemyError:
        logger.warning("Health check: database unavailable")
        components["database"] = "unavailable"
    try:
        request.app.state.cache.ping()
    except CacheUnavailableError:
        logger.warning("Health check: revocation cache unavailable")
        components["cache"] = "unavailable"

    healthy = all(v == "ok" for v in components.values())
    body = HealthResponse(status="healthy" if healthy else "degraded", version=API_VERSION, components=components)
    return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())
