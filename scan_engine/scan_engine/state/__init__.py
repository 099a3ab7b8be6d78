"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from scan_engine.state.database import (
    create_tables,
    get_engine,
    get_local_engine,
    get_session_factory,
    session_scope,
)
from scan_engine.state.repository import (
    QuotaLedgerRepository,
    RepositoryCacheRepository,
    ScanRepository,
)
from scan_engine.state.subscriptions import watch_principal_scans, watch_scan

__all__ = [
    "QuotaLedgerRepository",
    "RepositoryCacheRepository",
    "ScanRepository",
    "create_tables",
    "get_engine",
    "get_local_engine",
    "get_session_factory",
    "session_scope",
    "watch_principal_scans",
    "watch_scan",
]
