"""Scan endpoints: submit, read, watch, cancel, list, delete."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, HTTPException, Query, Response, status
from fastapi.responses import JSONResponse, StreamingResponse
from scan_engine.state.subscriptions import watch_scan
from sqlalchemy.exc import SQLAlchemyError

from scan_api.dependencies import (
    DispatcherDep,
    PrincipalDep,
    QuotaLedgerDep,
    ScanLifecycleDep,
    SessionFactoryDep,
    SettingsDep,
)
from scan_api.schemas import (
    QuotaExceededResponse,
    ScanListResponse,
    ScanRequest,
    ScanResponse,
    ScanSubmitResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scans", tags=["scans"])

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.post(
    "",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ScanSubmitResponse,
    responses={429: {"model": QuotaExceededResponse}},
)
async def submit_scan(
    body: ScanRequest,
    principal: PrincipalDep,
    ledger: QuotaLedgerDep,
    lifecycle: ScanLifecycleDep,
    dispatcher: DispatcherDep,
) -> ScanSubmitResponse | JSONResponse:
    """Consume one quota slot, queue a scan and start it in the background."""
    decision = await ledger.check_and_consume(principal)
    if not decision.allowed:
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content=QuotaExceededResponse(
                detail=decision.error or "Daily scan limit exceeded.",
                used=decision.used or 0,
                limit=decision.limit or 0,
            ).model_dump(),
        )

    try:
        record = await lifecycle.create(principal, body.repo_url)
    except SQLAlchemyError:
        # The consumed slot is not refunded.
        logger.exception("Failed to allocate scan record for %s", body.repo_url)
        raise HTTPException(status_code=500, detail="Failed to create scan") from None

    dispatcher.dispatch(record.scan_id, record.repo_url)
    return ScanSubmitResponse(scan_id=record.scan_id, repo_id=record.repo_id, status=record.status)


@router.get("", response_model=ScanListResponse)
async def list_scans(
    principal: PrincipalDep,
    lifecycle: ScanLifecycleDep,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> ScanListResponse:
    """Return the caller's scans, newest first."""
    records = await lifecycle.list_for_principal(principal.id, limit=limit, offset=offset)
    return ScanListResponse(
        items=[ScanResponse.from_record(r) for r in records],
        limit=limit,
        offset=offset,
    )


@router.get("/{scan_id}", response_model=ScanResponse)
async def get_scan(scan_id: str, lifecycle: ScanLifecycleDep) -> ScanResponse:
    record = await lifecycle.get(scan_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Scan {scan_id} not found")
    return ScanResponse.from_record(record)


@router.get("/{scan_id}/events")
async def watch_scan_events(
    scan_id: str,
    lifecycle: ScanLifecycleDep,
    session_factory: SessionFactoryDep,
    settings: SettingsDep,
) -> StreamingResponse:
    """Stream the scan as server-sent events until it reaches a terminal state.

    Each change produces one ``scan`` event whose data is the scan document.
    """
    if await lifecycle.get(scan_id) is None:
        raise HTTPException(status_code=404, detail=f"Scan {scan_id} not found")

    async def _events() -> AsyncIterator[str]:
        subscription = watch_scan(session_factory, scan_id, interval=settings.watch_poll_interval_seconds)
        try:
            async for record in subscription:
                payload = ScanResponse.from_record(record).model_dump(mode="json")
                yield f"event: scan\ndata: {json.dumps(payload)}\n\n"
        finally:
            await subscription.aclose()

    return StreamingResponse(_events(), media_type="text/event-stream", headers=_SSE_HEADERS)


@router.post("/{scan_id}/cancel", response_model=ScanResponse)
async def cancel_scan(scan_id: str, principal: PrincipalDep, lifecycle: ScanLifecycleDep) -> ScanResponse:
    """Cancel one of the caller's scans.  Finished scans are returned unchanged."""
    record = await lifecycle.get(scan_id)
    if record is None or record.principal_id != principal.id:
        raise HTTPException(status_code=404, detail=f"Scan {scan_id} not found")
    cancelled = await lifecycle.cancel(scan_id)
    if cancelled is None:
        raise HTTPException(status_code=404, detail=f"Scan {scan_id} not found")
    return ScanResponse.from_record(cancelled)


@router.delete("/{scan_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_scan(scan_id: str, principal: PrincipalDep, lifecycle: ScanLifecycleDep) -> Response:
    """Delete one of the caller's finished scans (signed-in users only)."""
    try:
        await lifecycle.delete(scan_id, principal)
    except PermissionError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from None
    except LookupError:
        raise HTTPException(status_code=404, detail=f"Scan {scan_id} not found") from None
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from None
    return Response(status_code=status.HTTP_204_NO_CONTENT)
