"""Middleware components for the gitscope API."""

from __future__ import annotations

from scan_api.middleware.identity import IdentityMiddleware
from scan_api.middleware.logging import RequestLoggingMiddleware
from scan_api.middleware.prometheus import PrometheusMiddleware
from scan_api.middleware.rate_limit import RateLimitConfig, RateLimitMiddleware
from scan_api.middleware.security_headers import SecurityHeadersMiddleware

__all__ = [
    "IdentityMiddleware",
    "PrometheusMiddleware",
    "RateLimitConfig",
    "RateLimitMiddleware",
    "RequestLoggingMiddleware",
    "SecurityHeadersMiddleware",
]
