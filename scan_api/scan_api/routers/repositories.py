"""Cached repository analyses (the shareable result data)."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException
from scan_engine.models.analysis import CachedRepositoryAnalysis
from scan_engine.state.database import session_scope
from scan_engine.state.repository import RepositoryCacheRepository

from scan_api.dependencies import SessionFactoryDep

router = APIRouter(prefix="/repositories", tags=["repositories"])


@router.get(
    "/{repo_id}",
    response_model=CachedRepositoryAnalysis,
    response_model_by_alias=False,
)
async def get_repository(repo_id: str, session_factory: SessionFactoryDep) -> CachedRepositoryAnalysis:
    """Return the latest cached analysis for *repo_id*."""
    async with session_scope(session_factory) as session:
        entry = await RepositoryCacheRepository(session).get(repo_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Repository {repo_id} has not been analysed")
    return entry
