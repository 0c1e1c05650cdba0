"""
api/main.py -- FastAPI application entry point for AccessGate.

Exposes passwordless sessions (email OTP, magic links, invites) and the admin
roster / invite / security-telemetry console over HTTP.

Run with:  uvicorn asgi:app --reload
           accessgate serve

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. log_requests          -- one access-log line per request

Rate limiting is not middleware: it is enforced inside the services against
database-backed buckets so that every worker shares the same counters.

Lifespan handles startup (engine, schema, HTTP client, service wiring, purge
task) and shutdown (cancel purge task, close HTTP client, dispose engine)
symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from api.errors import error_for_reason
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.invites import router as invites_router
from api.routes.v1.security import router as security_router
from api.routes.v1.session import router as session_router
from api.routes.v1.users import router as users_router
from auth.audit import SecurityAuditLog
from auth.dependencies import require_admin
from auth.directory import UserDirectoryService
from auth.invites import InviteService
from auth.mailer import OtpMailer
from auth.models import SessionClaims
from auth.otp import OtpService
from auth.ratelimit import RateLimiter, policies_from_settings
from auth.store import AuthStore
from auth.telemetry import SecurityTelemetry
from auth.tokens import SessionTokenCodec
from core.clock import Clock, utcnow
from core.config import Settings, get_settings
from core.database import build_engine
from core.network import NetworkFingerprintResolver

__version__ = "0.3.0"

PURGE_INTERVAL_SECONDS = 60 * 60

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("accessgate.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def configure_state(
    app: FastAPI,
    store: AuthStore,
    mailer: OtpMailer,
    settings: Settings,
    clock: Clock = utcnow,
) -> None:
    """Build every service around one store and attach them to app.state.

    Route handlers read services from request.app.state, so tests can call
    this again with a recording mailer or a fixed clock after startup.
    """
    secret = settings.auth_secret
    codec = SessionTokenCodec(secret, settings.session_ttl_seconds, clock=clock)
    limiter = RateLimiter(store, secret, policies_from_settings(settings), clock=clock)
    audit = SecurityAuditLog(secret, store, clock=clock)

    app.state.store = store
    app.state.codec = codec
    app.state.limiter = limiter
    app.state.audit = audit
    app.state.network_resolver = NetworkFingerprintResolver(
        settings.trusted_proxy_header,
        settings.trusted_proxy_hops,
        production=settings.is_production,
    )
    app.state.otp_service = OtpService(
        store,
        limiter,
        mailer,
        codec,
        audit,
        secret,
        code_length=settings.otp_length,
        ttl_minutes=settings.otp_ttl_minutes,
        max_attempts=settings.otp_max_attempts,
        magic_link_base_url=settings.public_base_url,
        clock=clock,
    )
    app.state.invite_service = InviteService(
        store,
        limiter,
        codec,
        audit,
        default_hours=settings.invite_default_hours,
        max_hours=settings.invite_max_hours,
        clock=clock,
    )
    app.state.directory = UserDirectoryService(store, clock=clock)
    app.state.telemetry = SecurityTelemetry(store, clock=clock)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def purge_expired(store: AuthStore, now: datetime | None = None) -> dict[str, int]:
    """Delete spent rate-limit buckets and challenges; mark stale invites expired."""
    now = now or utcnow()
    return {
        "buckets": await store.purge_expired_buckets(now),
        "challenges": await store.purge_expired_challenges(now),
        "invites": await store.expire_stale_invites(now),
    }


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired auth rows every hour.

    A failed pass is logged and retried on the next tick. CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep and unwinds
    the coroutine.
    """
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        try:
            counts = await purge_expired(app.state.store)
            logger.info(
                "Purged %d bucket(s), %d challenge(s); expired %d invite(s)",
                counts["buckets"],
                counts["challenges"],
                counts["invites"],
            )
        except SQLAlchemyError:
            logger.warning("Purge pass failed", exc_info=True)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Engine and schema first -- every service shares the one store.
      2. HTTP client second -- the mailer's provider deliveries hold it.
      3. Purge task last -- references app.state.store.
    """
    settings = get_settings()
    logger.info("AccessGate API starting up (environment=%s)", settings.environment)

    store = AuthStore(build_engine(settings.database_url, settings))
    await store.initialize()
    logger.info("Auth store initialized (%s)", store.dialect)

    http_client = httpx.AsyncClient()
    mailer = OtpMailer.from_settings(settings, http_client)
    configure_state(app, store, mailer, settings)
    logger.info("OTP email delivery: %s", settings.resolved_email_provider or "disabled")

    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    # Shutdown
    app.state.purge_task.cancel()
    await http_client.aclose()
    await store.close()
    logger.info("AccessGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AccessGate API",
    description="Passwordless email sessions, invites and access administration.",
    version=__version__,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by admin-only equivalents below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS. log_requests wraps the routes themselves.
# ---------------------------------------------------------------------------

_settings = get_settings()

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    # Query strings are left out: magic-link and activation tokens travel there.
    logger.info(
        "%s %s %d %.1fms",
        request.method,
        request.url.path,
        response.status_code,
        ms,
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(session_router, prefix="/api/v1", tags=["Session"])
app.include_router(invites_router, prefix="/api/v1", tags=["Admin: Invites"])
app.include_router(users_router, prefix="/api/v1", tags=["Admin: Users"])
app.include_router(security_router, prefix="/api/v1", tags=["Admin: Security"])


# ---------------------------------------------------------------------------
# Admin-only API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(session: SessionClaims = Depends(require_admin)):
    """Swagger UI -- admins only."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="AccessGate API")


@app.get("/redoc", include_in_schema=False)
async def redoc(session: SessionClaims = Depends(require_admin)):
    """ReDoc UI -- admins only."""
    return get_redoc_html(openapi_url="/openapi.json", title="AccessGate API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _is_email_error(error: dict) -> bool:
    loc = error.get("loc") or ()
    return error.get("type") == "value_error" and bool(loc) and loc[-1] == "email"


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    A malformed address in an EmailStr field answers 400 invalid_email, the
    same as the services report it.
    """
    errors = exc.errors()
    if errors and all(_is_email_error(e) for e in errors):
        return await http_exception_handler(request, error_for_reason("invalid_email"))
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
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Headers on the exception (Retry-After on 429) are carried through.
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
# regardless of router registration state. Not rate limited.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
async def health(request: Request) -> JSONResponse:
    """Return API liveness, version and database reachability."""
    store: AuthStore = request.app.state.store
    database_ok = await store.ping()
    body = HealthResponse(
        status="healthy" if database_ok else "degraded",
        version=__version__,
        components={"database": "ok" if database_ok else "unavailable"},
    )
    return JSONResponse(status_code=200 if database_ok else 503, content=body.model_dump())
