"""Rate-limiting middleware: sliding-window, per-principal.

This is abuse protection for the HTTP surface and is independent of the
daily scan quota enforced by the quota ledger.  Counters are keyed by the
principal resolved by :class:`~scan_api.middleware.identity.IdentityMiddleware`
(user id, or hashed IP for anonymous callers), so the raw client address is
never held in memory.

Scan submission has its own lower per-minute cap because each accepted
submission may clone a repository and call the model.

.. warning:: **Single-replica limitation**

   All state is process-local.  Each replica enforces its own counters and
   a restart resets them.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from typing import Any

from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

SCAN_SUBMISSION_PATH = "/api/v1/scans"

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class RateLimitConfig(BaseModel):
    """Rate-limiting configuration parameters.

    Attributes:
        enabled: Master toggle.  When ``False`` the middleware is a
            pass-through.
        default_requests_per_minute: Baseline request budget per principal.
        burst_multiplier: Multiplier applied to every per-minute limit to
            allow short spikes.
        scan_submissions_per_minute: Cap for ``POST /api/v1/scans``.
        exempt_paths: Paths that bypass rate limiting entirely.
    """

    enabled: bool = True
    default_requests_per_minute: int = 60
    burst_multiplier: float = 1.5
    scan_submissions_per_minute: int = 10
    exempt_paths: set[str] = {"/api/v1/health", "/ready", "/metrics"}


# ---------------------------------------------------------------------------
# Sliding window counter
# ---------------------------------------------------------------------------

_WINDOW_SECONDS: float = 60.0
_CLEANUP_INTERVAL_SECONDS: float = 60.0


class SlidingWindowCounter:
    """asyncio-safe sliding window request counter.

    Each key maps to a :class:`~collections.deque` of monotonic timestamps.
    :meth:`hit` prunes entries older than the window before appending.
    A background task drops keys whose windows have fully drained.
    """

    def __init__(self, window_seconds: float = _WINDOW_SECONDS) -> None:
        self._window: float = window_seconds
        self._buckets: dict[str, deque[float]] = {}
        self._lock: asyncio.Lock = asyncio.Lock()
        self._cleanup_task: asyncio.Task[None] | None = None
        self._running: bool = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Launch the periodic cleanup coroutine."""
        if self._running:
            return
        self._running = True
        self._cleanup_task = asyncio.ensure_future(self._cleanup_loop())

    async def stop(self) -> None:
        """Cancel the cleanup loop and wait for it to finish."""
        self._running = False
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None

    def _prune(self, bucket: deque[float], now: float) -> None:
        cutoff = now - self._window
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()

    async def hit(self, key: str) -> int:
        """Record a request for *key* and return the count within the window."""
        now = time.monotonic()
        async with self._lock:
            bucket = self._buckets.setdefault(key, deque())
            self._prune(bucket, now)
            bucket.append(now)
            return len(bucket)

    async def count(self, key: str) -> int:
        """Return the current count without recording a hit."""
        now = time.monotonic()
        async with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return 0
            self._prune(bucket, now)
            return len(bucket)

    async def time_until_reset(self, key: str) -> float:
        """Seconds until the oldest entry in *key*'s window expires."""
        now = time.monotonic()
        async with self._lock:
            bucket = self._buckets.get(key)
            if not bucket:
                return 0.0
            return max((bucket[0] + self._window) - now, 0.0)

    async def _cleanup_loop(self) -> None:
        while self._running:
            await asyncio.sleep(_CLEANUP_INTERVAL_SECONDS)
            now = time.monotonic()
            async with self._lock:
                stale_keys: list[str] = []
                for key, bucket in self._buckets.items():
                    self._prune(bucket, now)
                    if not bucket:
                        stale_keys.append(key)
                for key in stale_keys:
                    del self._buckets[key]
            if stale_keys:
                logger.debug("Rate-limit cleanup removed %d stale keys", len(stale_keys))


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-principal sliding-window rate limits.

    Responses carry ``X-RateLimit-Limit``, ``X-RateLimit-Remaining`` and
    ``X-RateLimit-Reset``; a principal over budget receives ``429`` with a
    ``Retry-After`` header.
    """

    def __init__(self, app: Any, config: RateLimitConfig | None = None) -> None:
        super().__init__(app)
        self._config: RateLimitConfig = config or RateLimitConfig()
        self._counter: SlidingWindowCounter = SlidingWindowCounter()
        logger.info(
            "RateLimitMiddleware initialised (enabled=%s, rpm=%d, scans/min=%d, burst=%.1fx)",
            self._config.enabled,
            self._config.default_requests_per_minute,
            self._config.scan_submissions_per_minute,
            self._config.burst_multiplier,
        )

    def _client_key(self, request: Request) -> str:
        principal = getattr(request.state, "principal", None)
        if principal is not None:
            return f"{principal.kind.value}:{principal.id}"
        return "unresolved"

    def _limit_for(self, method: str, path: str) -> int:
        """Per-minute limit for the request; ``0`` means exempt."""
        if path in self._config.exempt_paths:
            return 0
        if method == "POST" and path.rstrip("/") == SCAN_SUBMISSION_PATH:
            return self._config.scan_submissions_per_minute
        return self._config.default_requests_per_minute

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self._config.enabled:
            return await call_next(request)

        base_limit = self._limit_for(request.method, request.url.path)
        if base_limit == 0:
            return await call_next(request)

        if not self._counter.running:
            self._counter.start()

        burst_limit = int(base_limit * self._config.burst_multiplier)
        client_key = self._client_key(request)
        # Tiers are tracked independently so scan submissions do not eat the
        # general budget and vice versa.
        counter_key = f"{client_key}:{base_limit}"
        current_count = await self._counter.hit(counter_key)

        if current_count > burst_limit:
            retry_after = max(int(await self._counter.time_until_reset(counter_key)) + 1, 1)
            logger.warning(
                "Rate limit exceeded: key=%s path=%s count=%d limit=%d",
                client_key,
                request.url.path,
                current_count,
                burst_limit,
            )
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later.", "retry_after": retry_after},
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(burst_limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(retry_after),
                },
            )

        response = await call_next(request)

        reset_seconds = await self._counter.time_until_reset(counter_key)
        response.headers["X-RateLimit-Limit"] = str(burst_limit)
        response.headers["X-RateLimit-Remaining"] = str(max(burst_limit - current_count, 0))
        response.headers["X-RateLimit-Reset"] = str(max(int(reset_seconds) + 1, 1))
        return response
