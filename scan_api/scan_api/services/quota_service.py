"""Daily scan allowance enforcement.

Every scan submission passes through :meth:`QuotaLedger.check_and_consume`
before a scan record exists.  The ledger row for the principal is created
lazily on the first attempt and updated only through conditional
statements, so two concurrent submissions from the same principal cannot
both take the last slot and a window reset happens exactly once.

Window semantics::

    limit == -1          never blocks, only counts
    now >= reset_at      new window: used = 1, reset_at = now + window
    used >= limit        denied (window unchanged)
    otherwise            used += 1

Consumed slots are never refunded, including for scans that later fail.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from scan_engine.errors import LedgerStateError
from scan_engine.models.quota import UNLIMITED, Principal, PrincipalKind, QuotaDecision, QuotaState
from scan_engine.state.database import session_scope
from scan_engine.state.repository import QuotaLedgerRepository
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scan_api.middleware.prometheus import QUOTA_DECISIONS_TOTAL

logger = logging.getLogger(__name__)

_MAX_ATTEMPTS = 3

ANONYMOUS_LIMIT_MESSAGE = (
    "Daily scan limit exceeded. You have used {used}/{limit} scans today. Sign in for unlimited scans."
)
AUTHENTICATED_LIMIT_MESSAGE = "Daily scan limit exceeded ({used}/{limit})."


def _utcnow() -> datetime:
    return datetime.now(UTC)


class QuotaLedger:
    """Check-and-consume gate over the per-principal quota rows.

    Parameters
    ----------
    session_factory:
        Factory for short-lived sessions; each attempt commits on its own.
    anonymous_limit:
        Scans per window for anonymous principals (``-1`` for unlimited).
    authenticated_limit:
        Scans per window for authenticated principals.
    window:
        Length of a quota window.
    anonymous_retention:
        How long an idle anonymous row is kept before the retention sweep
        removes it.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        anonymous_limit: int = 3,
        authenticated_limit: int = UNLIMITED,
        window: timedelta = timedelta(hours=24),
        anonymous_retention: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._limits = {
            PrincipalKind.ANONYMOUS: anonymous_limit,
            PrincipalKind.AUTHENTICATED: authenticated_limit,
        }
        self._window = window
        self._retention = anonymous_retention
        self._clock = clock

    def default_limit(self, kind: PrincipalKind) -> int:
        """Limit assigned to a new ledger row for *kind*."""
        return self._limits[kind]

    def _repo(self, session: AsyncSession, principal: Principal) -> QuotaLedgerRepository:
        return QuotaLedgerRepository(session, principal.kind, retention=self._retention)

    async def get_quota(self, principal: Principal) -> QuotaState | None:
        """Return the principal's current allowance without consuming it."""
        async with session_scope(self._session_factory) as session:
            return await self._repo(session, principal).get(principal.id)

    async def check_and_consume(self, principal: Principal) -> QuotaDecision:
        """Consume one scan slot for *principal* if the allowance permits.

        Returns
        -------
        QuotaDecision
            ``allowed`` plus the post-decision ``used`` and ``limit``; a
            denial also carries the user-facing message.

        Raises
        ------
        LedgerStateError
            If the stored row is malformed, or the decision could not be
            settled because concurrent writers kept invalidating it.
        """
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            decision = await self._attempt(principal)
            if decision is not None:
                outcome = "allowed" if decision.allowed else "denied"
                QUOTA_DECISIONS_TOTAL.labels(kind=principal.kind.value, outcome=outcome).inc()
                return decision
            logger.debug(
                "Quota decision for %s %s lost a race (attempt %d/%d); re-reading",
                principal.kind.value,
                principal.id,
                attempt,
                _MAX_ATTEMPTS,
            )

        QUOTA_DECISIONS_TOTAL.labels(kind=principal.kind.value, outcome="error").inc()
        logger.error("Quota decision for %s %s did not settle", principal.kind.value, principal.id)
        raise LedgerStateError("Quota decision did not settle under contention")

    async def _attempt(self, principal: Principal) -> QuotaDecision | None:
        """Run one read-decide-write round; ``None`` means a guard lost a race."""
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            repo = self._repo(session, principal)
            try:
                state = await repo.get(principal.id)
            except LedgerStateError:
                QUOTA_DECISIONS_TOTAL.labels(kind=principal.kind.value, outcome="error").inc()
                raise

            if state is None:
                limit = self.default_limit(principal.kind)
                reset_at = None if limit == UNLIMITED else now + self._window
                if await repo.create(principal.id, limit=limit, reset_at=reset_at, now=now):
                    logger.info("Created quota ledger row for %s principal", principal.kind.value)
                    return QuotaDecision.allow(1, limit)
                return None

            if state.unlimited:
                if await repo.increment_unlimited(principal.id, now):
                    return QuotaDecision.allow(state.used + 1, UNLIMITED)
                return None

            if state.reset_at is None:
                QUOTA_DECISIONS_TOTAL.labels(kind=principal.kind.value, outcome="error").inc()
                logger.error("Finite quota row without reset_at: %s %s", principal.kind.value, principal.id)
                raise LedgerStateError("Invalid quota data")
            if now >= state.reset_at:
                if await repo.reset_window(principal.id, now, now + self._window):
                    logger.info(
                        "Quota window reset for %s %s (previous used=%d)",
                        principal.kind.value,
                        principal.id,
                        state.used,
                    )
                    return QuotaDecision.allow(1, state.limit)
                return None

            if state.used >= state.limit:
                template = (
                    AUTHENTICATED_LIMIT_MESSAGE if principal.is_authenticated else ANONYMOUS_LIMIT_MESSAGE
                )
                logger.warning(
                    "Quota exceeded: %s %s used=%d/%d",
                    principal.kind.value,
                    principal.id,
                    state.used,
                    state.limit,
                )
                return QuotaDecision.deny(
                    template.format(used=state.used, limit=state.limit),
                    state.used,
                    state.limit,
                )

            if await repo.increment_within_limit(principal.id, now):
                return QuotaDecision.allow(state.used + 1, state.limit)
            return None
