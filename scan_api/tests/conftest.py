"""Shared fixtures for gitscope API tests.

The application is driven through ``httpx.AsyncClient`` over
``ASGITransport`` without running its lifespan: the state store is an
in-memory SQLite database and the scan services are injected through
``dependency_overrides``.  The background dispatcher is a mock so no
pipeline runs during router tests.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from scan_api.config import APISettings
from scan_api.dependencies import (
    get_dispatcher,
    get_quota_ledger,
    get_scan_lifecycle,
    get_session_factory,
    get_settings,
)
from scan_api.identity import HMACTokenVerifier
from scan_api.main import create_app
from scan_api.services.quota_service import QuotaLedger
from scan_api.services.scan_runner import ScanDispatcher
from scan_api.services.scan_service import ScanLifecycle
from scan_engine.state.database import create_tables, get_local_engine
from scan_engine.state.database import get_session_factory as build_session_factory
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

_TEST_SESSION_SECRET = "test-session-secret-for-gitscope"
_TEST_IP_SALT = "test-ip-salt"

# ---------------------------------------------------------------------------
# Settings and clock
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        _env_file=None,
        debug=True,
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        session_secret=_TEST_SESSION_SECRET,
        ip_hash_salt=_TEST_IP_SALT,
        rate_limit_enabled=False,
        watch_poll_interval_seconds=0.01,
    )


@pytest.fixture()
def clock() -> MagicMock:
    """A settable UTC clock shared by the ledger and lifecycle."""
    fake = MagicMock()
    fake.return_value = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    return fake


# ---------------------------------------------------------------------------
# State store and services
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = get_local_engine(":memory:")
    await create_tables(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over a SQLite file, for tests with concurrent writers."""
    engine = get_local_engine(tmp_path / "state.db")
    await create_tables(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture()
def quota_ledger(session_factory, clock) -> QuotaLedger:
    return QuotaLedger(session_factory, anonymous_limit=3, authenticated_limit=-1, clock=clock)


@pytest.fixture()
def lifecycle(session_factory, clock) -> ScanLifecycle:
    return ScanLifecycle(session_factory, clock=clock)


@pytest.fixture()
def mock_dispatcher() -> MagicMock:
    """Dispatcher double that records dispatches without running scans."""
    dispatcher = MagicMock(spec=ScanDispatcher)
    dispatcher.dispatch.return_value = True
    dispatcher.active_count = 0
    return dispatcher


# ---------------------------------------------------------------------------
# Application and clients
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(test_settings, session_factory, quota_ledger, lifecycle, mock_dispatcher):
    """Create a FastAPI app with its services overridden for testing."""
    application = create_app(test_settings)
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_quota_ledger] = lambda: quota_ledger
    application.dependency_overrides[get_scan_lifecycle] = lambda: lifecycle
    application.dependency_overrides[get_dispatcher] = lambda: mock_dispatcher
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async client without credentials; requests resolve as anonymous."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def token_verifier() -> HMACTokenVerifier:
    return HMACTokenVerifier(_TEST_SESSION_SECRET)


@pytest.fixture()
def auth_headers(token_verifier: HMACTokenVerifier) -> dict[str, str]:
    """Bearer headers for the authenticated principal ``user-1``."""
    return {"Authorization": f"Bearer {token_verifier.issue('user-1')}"}


@pytest.fixture()
def other_auth_headers(token_verifier: HMACTokenVerifier) -> dict[str, str]:
    """Bearer headers for a second authenticated principal ``user-2``."""
    return {"Authorization": f"Bearer {token_verifier.issue('user-2')}"}
