"""FastAPI application entry-point for the gitscope API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from scan_engine.errors import CacheStateError, LedgerStateError, ScanStateError
from sqlalchemy.exc import SQLAlchemyError

from scan_api import __version__
from scan_api.config import APISettings, PlatformEnv, load_api_settings
from scan_api.dependencies import (
    dispose_engine,
    dispose_scan_services,
    get_engine_settings,
    get_session_factory,
    init_engine,
    init_scan_services,
)
from scan_api.identity import HMACTokenVerifier, IdentityResolver
from scan_api.middleware.identity import IdentityMiddleware
from scan_api.middleware.json_formatter import configure_structured_logging
from scan_api.middleware.logging import RequestLoggingMiddleware
from scan_api.middleware.prometheus import PrometheusMiddleware
from scan_api.middleware.rate_limit import RateLimitConfig, RateLimitMiddleware
from scan_api.middleware.security_headers import SecurityHeadersMiddleware
from scan_api.routers import health, identity, repositories, scans
from scan_api.routers import metrics as metrics_router
from scan_api.services.retention import RetentionSweeper

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Refuse to run outside dev with the default salt or session secret.
    - Initialise the database engine (SQLite tables are created on demand).
    - Wire the quota ledger, scan lifecycle, pipeline and dispatcher.
    - Start the anonymous-row retention sweep.

    On shutdown:
    - Interrupt in-flight scans (recorded as failed) and close clients.
    - Stop the sweep and dispose the engine.
    """
    settings: APISettings = app.state.settings

    if settings.platform_env in (PlatformEnv.STAGING, PlatformEnv.PRODUCTION) and settings.uses_default_secrets():
        raise RuntimeError(
            f"API_IP_HASH_SALT and API_SESSION_SECRET must be set in {settings.platform_env.value} mode. "
            "Refusing to start."
        )

    if settings.structured_logging:
        configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    engine_settings = get_engine_settings()
    engine = await init_engine(engine_settings)
    logger.info("Database engine initialised (%s)", engine.dialect.name)

    session_factory = get_session_factory()
    init_scan_services(settings, engine_settings, session_factory)
    logger.info("Scan services initialised (model=%s)", engine_settings.llm_model)

    sweeper = RetentionSweeper(session_factory, interval_seconds=settings.retention_sweep_interval_seconds)
    await sweeper.start()

    yield

    await dispose_scan_services()
    await sweeper.stop()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def _first_validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    ctx_error = (first.get("ctx") or {}).get("error")
    if isinstance(ctx_error, ValueError):
        return str(ctx_error)
    return str(first.get("msg") or "Invalid request")


def create_app(settings: APISettings | None = None) -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = settings or load_api_settings()

    app = FastAPI(
        title="gitscope API",
        description="AI analysis of public Git repositories.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.identity_resolver = IdentityResolver(
        HMACTokenVerifier(settings.session_secret.get_secret_value()),
        settings.ip_hash_salt.get_secret_value(),
        cookie_name=settings.session_cookie_name,
    )

    # -- Middleware (last added runs first) ----------------------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "Accept"],
    )
    app.add_middleware(SecurityHeadersMiddleware, hsts=settings.platform_env != PlatformEnv.DEV)
    app.add_middleware(
        RateLimitMiddleware,
        config=RateLimitConfig(
            enabled=settings.rate_limit_enabled,
            default_requests_per_minute=settings.rate_limit_requests_per_minute,
            burst_multiplier=settings.rate_limit_burst_multiplier,
            scan_submissions_per_minute=settings.rate_limit_scan_submissions_per_minute,
        ),
    )
    app.add_middleware(IdentityMiddleware, resolver=app.state.identity_resolver)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(scans.router, prefix="/api/v1")
    app.include_router(repositories.router, prefix="/api/v1")
    app.include_router(identity.router, prefix="/api/v1")

    app.include_router(metrics_router.router)
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        message = _first_validation_message(exc)
        logger.info("Rejected request on %s: %s", request.url.path, message)
        return JSONResponse(status_code=400, content={"detail": message})

    @app.exception_handler(LedgerStateError)
    async def ledger_error_handler(request: Request, exc: LedgerStateError) -> JSONResponse:
        logger.error("Quota ledger error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": "Quota check failed"})

    @app.exception_handler(ScanStateError)
    @app.exception_handler(CacheStateError)
    async def state_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Stored state error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": "Internal state error"})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError) -> JSONResponse:
        logger.warning("PermissionError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=403, content={"detail": "Permission denied"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn scan_api.main:app``.
app = create_app()
