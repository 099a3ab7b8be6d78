"""Identity middleware: attaches the resolved principal to every request."""

from __future__ import annotations

from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from scan_api.identity import IdentityResolver


class IdentityMiddleware(BaseHTTPMiddleware):
    """Populate ``request.state.principal`` for routers, rate limiting and logs.

    Unlike an authentication gate this middleware never rejects a request:
    callers without a valid credential are anonymous principals.
    """

    def __init__(self, app: Any, resolver: IdentityResolver) -> None:
        super().__init__(app)
        self._resolver = resolver

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        principal = self._resolver.resolve(request)
        request.state.principal = principal
        request.state.principal_kind = principal.kind.value
        request.state.principal_id = principal.id
        return await call_next(request)
