"""Caller identity and quota endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Request
from scan_engine.models.quota import UNLIMITED

from scan_api.dependencies import IdentityResolverDep, PrincipalDep, QuotaLedgerDep
from scan_api.schemas import AnonymousIdResponse, QuotaResponse

router = APIRouter(tags=["identity"])


@router.get("/anonymous", response_model=AnonymousIdResponse)
async def anonymous_id(request: Request, resolver: IdentityResolverDep) -> AnonymousIdResponse:
    """Return the anonymous id this caller's scans and quota are keyed by."""
    return AnonymousIdResponse(uid=resolver.anonymous_id(request))


@router.get("/quota", response_model=QuotaResponse)
async def get_quota(principal: PrincipalDep, ledger: QuotaLedgerDep) -> QuotaResponse:
    """Return the caller's allowance without consuming it."""
    state = await ledger.get_quota(principal)
    if state is not None:
        return QuotaResponse.from_state(state)
    limit = ledger.default_limit(principal.kind)
    return QuotaResponse(used=0, limit=limit, reset_at=None, unlimited=limit == UNLIMITED)
