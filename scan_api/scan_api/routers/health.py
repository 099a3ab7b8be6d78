"""Health-check and readiness probe endpoints.

``/health`` (liveness) is registered under the versioned prefix
(``/api/v1/health``).  ``/ready`` is registered at the application root so
orchestrators can gate traffic independently of the API version.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from scan_api import __version__
from scan_api.dependencies import DispatcherDep, SessionFactoryDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _db_ok(session_factory: SessionFactoryDep) -> bool:
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("DB health check failed: %s", exc)
        return False
    return True


@router.get("/health")
async def health(session_factory: SessionFactoryDep, dispatcher: DispatcherDep) -> dict[str, Any]:
    """Return service health.

    Always HTTP 200 so load-balancers see the process as alive; ``db``
    reports whether the state store is reachable.
    """
    return {
        "status": "healthy",
        "version": __version__,
        "db": "ok" if await _db_ok(session_factory) else "degraded",
        "active_scans": dispatcher.active_count,
    }


# ---------------------------------------------------------------------------
# Readiness probe (outside API versioning)
# ---------------------------------------------------------------------------

readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe(session_factory: SessionFactoryDep) -> JSONResponse:
    """Readiness probe: HTTP 503 ``not_ready`` while the state store is unreachable."""
    db_ok = await _db_ok(session_factory)
    return JSONResponse(
        status_code=200 if db_ok else 503,
        content={
            "status": "ready" if db_ok else "not_ready",
            "version": __version__,
            "checks": {"db": "ok" if db_ok else "unavailable"},
        },
    )
