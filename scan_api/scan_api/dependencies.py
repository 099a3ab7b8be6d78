"""FastAPI dependency injection for settings, the state store, and scan services."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Annotated

from fastapi import Depends, Request
from scan_engine.config import EngineSettings, load_engine_settings
from scan_engine.git.git_client import GitRepositoryProvider
from scan_engine.llm.llm_client import AnthropicAnalysisClient
from scan_engine.models.quota import Principal
from scan_engine.pipeline.analyzer import AnalysisPipeline
from scan_engine.state.database import create_tables, get_engine, is_sqlite
from scan_engine.state.database import get_session_factory as _build_session_factory
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from scan_api.config import APISettings, load_api_settings
from scan_api.identity import IdentityResolver
from scan_api.services.quota_service import QuotaLedger
from scan_api.services.scan_runner import ScanDispatcher, ScanRunner
from scan_api.services.scan_service import ScanLifecycle

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None
_engine_settings_cache: EngineSettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


def get_engine_settings() -> EngineSettings:
    """Return the cached :class:`EngineSettings` singleton."""
    global _engine_settings_cache  # noqa: PLW0603
    if _engine_settings_cache is None:
        _engine_settings_cache = load_engine_settings()
    return _engine_settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_engine(engine_settings: EngineSettings) -> AsyncEngine:
    """Create and cache the global async engine; SQLite tables are created on demand."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        engine_settings.database_url,
        pool_size=engine_settings.database_pool_size,
        max_overflow=engine_settings.database_max_overflow,
    )
    if is_sqlite(_engine):
        await create_tables(_engine)
    _session_factory = _build_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]

# ---------------------------------------------------------------------------
# Scan services
# ---------------------------------------------------------------------------

_source: GitRepositoryProvider | None = None
_model: AnthropicAnalysisClient | None = None
_quota_ledger: QuotaLedger | None = None
_lifecycle: ScanLifecycle | None = None
_dispatcher: ScanDispatcher | None = None


def init_scan_services(
    settings: APISettings,
    engine_settings: EngineSettings,
    session_factory: async_sessionmaker[AsyncSession],
) -> ScanDispatcher:
    """Wire the quota ledger, lifecycle, pipeline and dispatcher singletons."""
    global _source, _model, _quota_ledger, _lifecycle, _dispatcher  # noqa: PLW0603
    _source = GitRepositoryProvider(engine_settings)
    _model = AnthropicAnalysisClient(engine_settings)
    if not _model.enabled:
        logger.warning("LLM analysis is not configured; fresh scans will fail with ANALYSIS_FAILED")
    _quota_ledger = QuotaLedger(
        session_factory,
        anonymous_limit=settings.anonymous_quota_limit,
        authenticated_limit=settings.authenticated_quota_limit,
        window=timedelta(hours=settings.quota_window_hours),
        anonymous_retention=timedelta(hours=settings.anonymous_retention_hours),
    )
    _lifecycle = ScanLifecycle(session_factory)
    pipeline = AnalysisPipeline(session_factory, _source, _model, engine_settings)
    _dispatcher = ScanDispatcher(ScanRunner(_lifecycle, pipeline))
    return _dispatcher


async def dispose_scan_services() -> None:
    """Interrupt in-flight scans and close outbound clients."""
    global _source, _model, _quota_ledger, _lifecycle, _dispatcher  # noqa: PLW0603
    if _dispatcher is not None:
        await _dispatcher.shutdown()
    if _source is not None:
        await _source.aclose()
    if _model is not None:
        await _model.aclose()
    _source = _model = _quota_ledger = _lifecycle = _dispatcher = None


def get_quota_ledger() -> QuotaLedger:
    if _quota_ledger is None:
        raise RuntimeError("Quota ledger has not been initialised. Ensure init_scan_services() is called.")
    return _quota_ledger


def get_scan_lifecycle() -> ScanLifecycle:
    if _lifecycle is None:
        raise RuntimeError("Scan lifecycle has not been initialised. Ensure init_scan_services() is called.")
    return _lifecycle


def get_dispatcher() -> ScanDispatcher:
    if _dispatcher is None:
        raise RuntimeError("Scan dispatcher has not been initialised. Ensure init_scan_services() is called.")
    return _dispatcher


QuotaLedgerDep = Annotated[QuotaLedger, Depends(get_quota_ledger)]
ScanLifecycleDep = Annotated[ScanLifecycle, Depends(get_scan_lifecycle)]
DispatcherDep = Annotated[ScanDispatcher, Depends(get_dispatcher)]

# ---------------------------------------------------------------------------
# Identity (populated by IdentityMiddleware)
# ---------------------------------------------------------------------------


def get_identity_resolver(request: Request) -> IdentityResolver:
    """Return the resolver the application was built with."""
    resolver: IdentityResolver = request.app.state.identity_resolver
    return resolver


IdentityResolverDep = Annotated[IdentityResolver, Depends(get_identity_resolver)]


def get_principal(request: Request, resolver: IdentityResolverDep) -> Principal:
    """Return the principal resolved for this request."""
    principal: Principal | None = getattr(request.state, "principal", None)
    if principal is None:
        principal = resolver.resolve(request)
        request.state.principal = principal
    return principal


PrincipalDep = Annotated[Principal, Depends(get_principal)]
