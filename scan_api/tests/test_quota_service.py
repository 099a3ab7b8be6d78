"""Tests for QuotaLedger check-and-consume semantics.

Covers:
- First scan creates the ledger row counting that scan.
- Anonymous principals are refused at limit + 1 with ``used == limit``.
- Unlimited principals always pass and are still counted.
- A due window resets to ``used == 1`` and a fresh boundary.
- Malformed rows surface as LedgerStateError.
- Contention that never settles surfaces as LedgerStateError.
- Concurrent submissions from one principal never overshoot the limit,
  and a due window is reset by exactly one of them.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from scan_api.services.quota_service import ANONYMOUS_LIMIT_MESSAGE, QuotaLedger
from scan_engine.errors import LedgerStateError
from scan_engine.models.quota import UNLIMITED, Principal, PrincipalKind, QuotaState
from scan_engine.state.database import session_scope
from scan_engine.state.repository import QuotaLedgerRepository
from scan_engine.state.tables import UserTable

_ANON = Principal(kind=PrincipalKind.ANONYMOUS, id="hashed-ip")
_USER = Principal(kind=PrincipalKind.AUTHENTICATED, id="user-1")
_WINDOW = timedelta(hours=24)


@pytest.mark.asyncio
async def test_first_scan_creates_row(quota_ledger: QuotaLedger, clock) -> None:
    decision = await quota_ledger.check_and_consume(_ANON)

    assert decision.allowed
    assert decision.used == 1
    assert decision.limit == 3

    state = await quota_ledger.get_quota(_ANON)
    assert state is not None
    assert state.used == 1
    assert state.reset_at == clock.return_value + _WINDOW


@pytest.mark.asyncio
async def test_anonymous_rejected_after_limit(quota_ledger: QuotaLedger) -> None:
    for expected in (1, 2, 3):
        decision = await quota_ledger.check_and_consume(_ANON)
        assert decision.allowed
        assert decision.used == expected

    rejected = await quota_ledger.check_and_consume(_ANON)

    assert not rejected.allowed
    assert rejected.used == 3
    assert rejected.limit == 3
    assert rejected.error == ANONYMOUS_LIMIT_MESSAGE.format(used=3, limit=3)
    assert "Sign in" in rejected.error

    state = await quota_ledger.get_quota(_ANON)
    assert state is not None
    assert state.used == 3


@pytest.mark.asyncio
async def test_authenticated_unlimited_still_counts(quota_ledger: QuotaLedger) -> None:
    for _ in range(10):
        decision = await quota_ledger.check_and_consume(_USER)
        assert decision.allowed
        assert decision.limit == UNLIMITED

    state = await quota_ledger.get_quota(_USER)
    assert state is not None
    assert state.used == 10
    assert state.unlimited
    assert state.reset_at is None


@pytest.mark.asyncio
async def test_finite_authenticated_limit_message(session_factory, clock) -> None:
    ledger = QuotaLedger(session_factory, authenticated_limit=1, clock=clock)
    await ledger.check_and_consume(_USER)

    rejected = await ledger.check_and_consume(_USER)

    assert not rejected.allowed
    assert rejected.error == "Daily scan limit exceeded (1/1)."


@pytest.mark.asyncio
async def test_window_reset_after_rejection(quota_ledger: QuotaLedger, clock) -> None:
    start = clock.return_value
    for _ in range(4):
        await quota_ledger.check_and_consume(_ANON)

    clock.return_value = start + _WINDOW
    decision = await quota_ledger.check_and_consume(_ANON)

    assert decision.allowed
    assert decision.used == 1
    state = await quota_ledger.get_quota(_ANON)
    assert state is not None
    assert state.used == 1
    assert state.reset_at == clock.return_value + _WINDOW


@pytest.mark.asyncio
async def test_malformed_row_raises(quota_ledger: QuotaLedger, session_factory, clock) -> None:
    now = clock.return_value
    async with session_scope(session_factory) as session:
        session.add(
            UserTable(
                user_id=_USER.id,
                quota_used=1,
                quota_limit=5,
                quota_reset_at=None,
                created_at=now,
                updated_at=now,
            )
        )

    with pytest.raises(LedgerStateError, match="Invalid quota data"):
        await quota_ledger.check_and_consume(_USER)


@pytest.mark.asyncio
async def test_finite_state_without_boundary_raises(quota_ledger: QuotaLedger) -> None:
    unchecked = QuotaState.model_construct(used=1, limit=5, reset_at=None)
    with patch.object(QuotaLedgerRepository, "get", AsyncMock(return_value=unchecked)):
        with pytest.raises(LedgerStateError, match="Invalid quota data"):
            await quota_ledger.check_and_consume(_USER)


@pytest.mark.asyncio
async def test_unsettled_contention_raises(quota_ledger: QuotaLedger) -> None:
    with patch.object(QuotaLedger, "_attempt", AsyncMock(return_value=None)) as attempt:
        with pytest.raises(LedgerStateError, match="did not settle"):
            await quota_ledger.check_and_consume(_ANON)
    assert attempt.await_count == 3


@pytest.mark.asyncio
async def test_lost_race_is_retried(quota_ledger: QuotaLedger) -> None:
    real_attempt = QuotaLedger._attempt
    calls = {"n": 0}

    async def _flaky(self, principal):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return await real_attempt(self, principal)

    with patch.object(QuotaLedger, "_attempt", _flaky):
        decision = await quota_ledger.check_and_consume(_ANON)

    assert decision.allowed
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_get_quota_does_not_consume(quota_ledger: QuotaLedger) -> None:
    assert await quota_ledger.get_quota(_ANON) is None
    await quota_ledger.check_and_consume(_ANON)
    await quota_ledger.get_quota(_ANON)
    state = await quota_ledger.get_quota(_ANON)
    assert state is not None
    assert state.used == 1


# ---------------------------------------------------------------------------
# Concurrent submissions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_concurrent_consumes_never_exceed_limit(file_session_factory, clock) -> None:
    ledger = QuotaLedger(file_session_factory, anonymous_limit=3, authenticated_limit=UNLIMITED, clock=clock)
    await ledger.check_and_consume(_ANON)

    decisions = await asyncio.gather(*(ledger.check_and_consume(_ANON) for _ in range(6)))

    assert sum(d.allowed for d in decisions) == 2
    assert all(d.used == 3 for d in decisions if not d.allowed)
    state = await ledger.get_quota(_ANON)
    assert state is not None
    assert state.used == 3


@pytest.mark.asyncio
async def test_concurrent_consumes_reset_window_once(file_session_factory, clock) -> None:
    ledger = QuotaLedger(file_session_factory, anonymous_limit=3, authenticated_limit=UNLIMITED, clock=clock)
    start = clock.return_value
    for _ in range(3):
        await ledger.check_and_consume(_ANON)
    assert not (await ledger.check_and_consume(_ANON)).allowed

    clock.return_value = start + _WINDOW + timedelta(minutes=1)
    decisions = await asyncio.gather(*(ledger.check_and_consume(_ANON) for _ in range(2)))

    assert all(d.allowed for d in decisions)
    assert sorted(d.used for d in decisions) == [1, 2]
    state = await ledger.get_quota(_ANON)
    assert state is not None
    assert state.used == 2
    assert state.reset_at == clock.return_value + _WINDOW
