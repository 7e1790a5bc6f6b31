"""
api/main.py -- FastAPI application entry point for the Qualibrite account-security API.

Exposes login, MFA, account recovery, key rotation and the security audit
trail over HTTP for the web client and the admin console.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. csrf_protect          -- double-submit cookie check on unsafe methods
  5. log_requests          -- one line per request with latency

Lifespan handles startup (security services, key sweep task) and shutdown
(cancel sweep task, dispose engines) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.mfa import router as mfa_router
from auth.dependencies import require_security_operator
from auth.models import Account
from auth.services import build_services
from auth.tokens import (
    ACCESS_COOKIE,
    CSRF_COOKIE,
    CSRF_HEADER,
    csrf_tokens_match,
    generate_csrf_token,
    set_csrf_cookie,
)
from core.config import get_settings

API_VERSION = "1.0.0"
_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("qualibrite.api")

# ---------------------------------------------------------------------------
# Background key sweep
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI) -> None:
    """Retire expired grace keys on a fixed interval.

    sweep() is idempotent, so several workers running this loop against the
    same database is harmless. CancelledError from task.cancel() during
    shutdown propagates out of asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(settings.key_sweep_interval_seconds)
        try:
            await asyncio.to_thread(app.state.services.key_manager.sweep)
        except Exception:
            # Keep the loop alive; the next interval retries.
            logger.exception("Signing key sweep failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the security services, start the sweep, tear both down on exit.

    Startup order matters: the services own the key ring the sweep task
    references, so they must exist before the task starts.
    """
    logger.info("Qualibrite security API starting up")
    app.state.services = build_services(settings)
    retired = app.state.services.key_manager.sweep()
    if retired:
        logger.info("Startup sweep retired %d signing key(s)", len(retired))
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app))

    yield

    app.state.sweep_task.cancel()
    app.state.services.close()
    logger.info("Qualibrite security API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Qualibrite Health Account Security API",
    description="Authentication, MFA, account lockout, signing-key rotation and security audit trail.",
    version=API_VERSION,
    lifespan=lifespan,
    # Built-in docs disabled; auth-protected equivalents are registered below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# @app.middleware("http") functions wrap inside add_middleware() classes, and
# the last one registered runs first. log_requests is registered after
# csrf_protect so rejected requests are logged too.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", CSRF_HEADER],
    expose_headers=[CSRF_HEADER],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def csrf_protect(request: Request, call_next):
    """Double-submit cookie CSRF check.

    Every response carries the token in the XSRF-TOKEN-COOKIE cookie and
    echoes it in the X-CSRF-Token header. Unsafe methods must send the same
    value back in the header. Requests authenticated purely by a Bearer
    header carry no ambient credentials and are exempt.
    """
    cookie_token = request.cookies.get(CSRF_COOKIE)
    token = cookie_token or generate_csrf_token()
    request.state.csrf_token = token

    bearer_only = request.headers.get("Authorization", "").startswith("Bearer ") and not request.cookies.get(
        ACCESS_COOKIE
    )
    if settings.csrf_enabled and request.method not in _SAFE_METHODS and not bearer_only:
        if not csrf_tokens_match(cookie_token, request.headers.get(CSRF_HEADER)):
            logger.warning("CSRF check failed for %s %s", request.method, request.url.path)
            response = JSONResponse(
                status_code=403,
                content=ErrorResponse(
                    error=ErrorDetail(code="csrf_failed", message="Missing or invalid CSRF token.")
                ).model_dump(),
            )
            if cookie_token is None:
                set_csrf_cookie(response, token)
            response.headers[CSRF_HEADER] = token
            return response

    response = await call_next(request)
    if cookie_token is None:
        set_csrf_cookie(response, token)
    response.headers[CSRF_HEADER] = token
    return response


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

app.include_router(auth_router, prefix="/api", tags=["Auth"])
app.include_router(mfa_router, prefix="/api", tags=["MFA"])
app.include_router(admin_router, prefix="/api", tags=["Admin"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(_: Account = Depends(require_security_operator)):
    """Swagger UI -- security operators only."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title=app.title)


@app.get("/redoc", include_in_schema=False)
async def redoc(_: Account = Depends(require_security_operator)):
    """ReDoc UI -- security operators only."""
    return get_redoc_html(openapi_url="/openapi.json", title=app.title)


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when the login limit is exceeded."""
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
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured error for HTTPException; a dict detail is already {"code", "message"}."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
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


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
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
# No rate limit and no auth: load balancers must reach it.
# ---------------------------------------------------------------------------


@app.get("/api/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=API_VERSION)
