"""Prometheus metrics for HTTP traffic and scan processing.

Exposes RED metrics (Rate, Errors, Duration) for HTTP requests plus
application counters for scan outcomes, cache lookups, quota decisions and
model calls.

Path normalisation collapses path parameters (e.g. ``/scans/9f1c...`` ->
``/scans/{id}``) to prevent unbounded label cardinality.
"""

from __future__ import annotations

import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

HTTP_REQUESTS_TOTAL = Counter(
    "gitscope_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "gitscope_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

SCANS_TOTAL = Counter(
    "gitscope_scans_total",
    "Scans reaching a terminal state, by outcome",
    ["outcome"],
)

CACHE_LOOKUPS_TOTAL = Counter(
    "gitscope_cache_lookups_total",
    "Repository cache lookups by result",
    ["result"],
)

QUOTA_DECISIONS_TOTAL = Counter(
    "gitscope_quota_decisions_total",
    "Quota ledger decisions by principal kind and outcome",
    ["kind", "outcome"],
)

LLM_CALLS_TOTAL = Counter(
    "gitscope_llm_calls_total",
    "Language model analysis calls by outcome",
    ["outcome"],
)

SCAN_DURATION = Histogram(
    "gitscope_scan_duration_seconds",
    "Wall-clock duration of executed scans",
    ["outcome"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)


# ---------------------------------------------------------------------------
# Path normalisation: collapse UUIDs, hex IDs, and numeric segments
# ---------------------------------------------------------------------------

_PATH_PARAM_PATTERNS = [
    (re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"), "/{id}"),
    # Repository ids and other hex digests
    (re.compile(r"/[0-9a-f]{12,64}(?=/|$)"), "/{id}"),
    (re.compile(r"/\d+(?=/|$)"), "/{id}"),
]


def _normalise_path(path: str) -> str:
    """Collapse path parameters to prevent cardinality explosion."""
    for pattern, replacement in _PATH_PARAM_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


# Paths excluded from metrics recording.
_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record HTTP request rate, error rate, and latency as Prometheus metrics."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        method = request.method
        normalised = _normalise_path(path)

        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        HTTP_REQUESTS_TOTAL.labels(method=method, path=normalised, status_code=str(response.status_code)).inc()
        HTTP_REQUEST_DURATION.labels(method=method, path=normalised).observe(duration)
        return response
