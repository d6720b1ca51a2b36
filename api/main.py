"""
api/main.py -- FastAPI application entry point for Gatekeeper.

Run with:  python main.py serve
           uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan opens the stores, wires every service into app.state (see
wire_services), starts the purge task, and tears all of it down
symmetrically on shutdown.

Route layout:
  /api/v1/...   first-party JSON API (ErrorResponse envelope on failure)
  /oauth2/...   OAuth 2.0 / OIDC   (RFC 6749 error bodies)
  /saml/...     SAML 2.0 IdP       (StatusCode inside SAML messages)
  /cas/...      CAS 1.0 / 2.0      (plaintext / XML)
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
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.cas import router as cas_router
from api.routes.oauth2 import router as oauth2_router
from api.routes.saml import router as saml_router
from api.routes.v1.auth import identity_error_response
from api.routes.v1.auth import router as auth_router
from api.routes.v1.devices import router as devices_router
from api.routes.v1.mfa import router as mfa_router
from api.routes.v1.sessions import router as sessions_router
from auth.mfa import MFAService
from auth.pipeline import LoginPipeline
from auth.risk import RiskEngine
from auth.sessions import SessionIssuer
from auth.store import UserStore
from core.config import Settings, get_settings
from core.errors import IdentityError
from ephemeral.store import EphemeralStore, open_store
from federation.cas import CASServer
from federation.oauth2 import OAuth2Provider
from federation.saml import SAMLIdentityProvider
from federation.store import FederationStore
from notify.delivery import DeliveryQueue
from notify.events import EventSink
from notify.notifications import Notifier, build_transport
from policy.evaluator import ConditionalAccessEvaluator
from policy.store import PolicyStore

VERSION = "1.0.0"

PURGE_INTERVAL_SECONDS = 15 * 60

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gatekeeper.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(
    app: FastAPI,
    settings: Settings,
    users: UserStore,
    policies: PolicyStore,
    federation: FederationStore,
    ephemeral: EphemeralStore,
    delivery: DeliveryQueue | None = None,
) -> None:
    """Build the service graph over already-open stores and attach it to app.state.

    Shared by the production lifespan and the test fixtures, so tests run
    exactly the wiring production runs -- only the stores differ.
    """
    delivery = delivery or DeliveryQueue(
        workers=settings.delivery_workers,
        maxsize=settings.delivery_queue_size,
        max_attempts=settings.delivery_max_attempts,
        backoff=settings.delivery_backoff_seconds,
    )
    notifier = Notifier(
        build_transport(settings.notification_gateway_url, settings.delivery_timeout_seconds),
        delivery,
        settings.reset_link_base,
    )
    events = EventSink(
        delivery,
        settings.event_webhook_urls,
        secret=settings.event_webhook_secret,
        timeout=settings.delivery_timeout_seconds,
    )
    risk = RiskEngine(users, ephemeral, tz=settings.risk_timezone)
    evaluator = ConditionalAccessEvaluator(policies, tz=settings.risk_timezone)
    sessions = SessionIssuer(users, ephemeral, settings)
    mfa = MFAService(users, ephemeral, notifier, settings)

    app.state.settings = settings
    app.state.user_store = users
    app.state.policy_store = policies
    app.state.federation_store = federation
    app.state.ephemeral_store = ephemeral
    app.state.delivery = delivery
    app.state.notifier = notifier
    app.state.events = events
    app.state.risk_engine = risk
    app.state.session_issuer = sessions
    app.state.mfa_service = mfa
    app.state.login_pipeline = LoginPipeline(
        users, ephemeral, risk, evaluator, sessions, mfa, notifier, events, settings
    )
    app.state.oauth2_provider = OAuth2Provider(federation, users, ephemeral, risk, settings)
    app.state.saml_provider = SAMLIdentityProvider(federation, users, ephemeral, sessions, settings)
    app.state.cas_server = CASServer(users, ephemeral, settings)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired sessions and expired ephemeral entries every 15 minutes.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        sessions = app.state.user_store.purge_expired_sessions()
        entries = app.state.ephemeral_store.purge_expired()
        if sessions or entries:
            logger.info("Purged %d expired session(s), %d ephemeral entr(ies)", sessions, entries)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open stores, wire services, start the purge task; undo it all on shutdown."""
    settings = get_settings()
    logger.info("Gatekeeper starting up")
    users = UserStore(settings.database_url)
    policies = PolicyStore(settings.database_url)
    federation = FederationStore(settings.database_url)
    ephemeral = open_store(settings.ephemeral_store_url)
    wire_services(app, settings, users, policies, federation, ephemeral)
    logger.info("Stores initialized (ephemeral backend: %s)", type(ephemeral).__name__)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.delivery.shutdown()
    ephemeral.close()
    federation.close()
    policies.close()
    users.close()
    logger.info("Gatekeeper shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="Gatekeeper",
    description="Identity provider: risk-adaptive login, conditional access, OAuth2/OIDC, SAML 2.0 and CAS.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack -- register in the order the request should meet them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

if _settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=3600,
    )

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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
app.include_router(mfa_router, prefix="/api/v1", tags=["MFA"])
app.include_router(devices_router, prefix="/api/v1", tags=["Devices"])
app.include_router(sessions_router, prefix="/api/v1", tags=["Sessions"])
app.include_router(oauth2_router, tags=["OAuth2"])
app.include_router(saml_router, tags=["SAML"])
app.include_router(cas_router, tags=["CAS"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# First-party errors share the ErrorResponse envelope. Protocol routes render
# their own error formats and never reach these handlers for protocol errors.
# ---------------------------------------------------------------------------


@app.exception_handler(IdentityError)
async def identity_error_handler(request: Request, exc: IdentityError) -> JSONResponse:
    return identity_error_response(exc)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and Retry-After."""
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
    """Structured dict details are used as-is; anything else is wrapped."""
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors.

    The traceback goes to the log only, never to the response body.
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
# Health endpoint -- not rate limited; load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Liveness plus a ping of the relational and ephemeral stores."""
    database = "healthy" if request.app.state.user_store.ping() else "unhealthy"
    ephemeral = "healthy" if request.app.state.ephemeral_store.ping() else "unhealthy"
    healthy = database == "healthy" and ephemeral == "healthy"
    body = HealthResponse(
        status="healthy" if healthy else "degraded",
        version=VERSION,
        components={"app": "healthy", "database": database, "ephemeral_store": ephemeral},
    )
    return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())
