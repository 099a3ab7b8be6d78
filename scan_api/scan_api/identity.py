"""Identity resolution: request -> Principal.

A request carrying a valid session credential (``Authorization: Bearer``
header or the session cookie) resolves to an authenticated principal.
Every other request, including one with an invalid or expired credential,
resolves to an anonymous principal keyed by a salted hash of the client
IP.  Resolution never fails.

Session tokens have the form ``gsdev.<b64url(payload json)>.<hex sig>``
where the signature is HMAC-SHA256 over the payload bytes.  The payload
must carry a non-empty ``sub`` and an unexpired ``exp``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
import uuid
from collections.abc import Callable
from typing import Any, Protocol

from scan_engine.models.quota import Principal, PrincipalKind
from starlette.requests import Request

logger = logging.getLogger(__name__)

LOCAL_DEV_IP = "local-dev"
_TOKEN_PREFIX = "gsdev"


class TokenVerifier(Protocol):
    """Verifies a bearer credential and yields the subject, or ``None``."""

    def verify(self, token: str) -> str | None: ...


class HMACTokenVerifier:
    """Issue and verify HMAC-signed session tokens.

    Parameters
    ----------
    secret:
        Shared signing secret.
    clock:
        Returns the current UNIX time; injectable for tests.
    """

    def __init__(self, secret: str, clock: Callable[[], float] = time.time) -> None:
        if not secret:
            raise ValueError("Token secret must not be empty")
        self._secret = secret.encode("utf-8")
        self._clock = clock

    def _sign(self, payload: bytes) -> str:
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def issue(self, sub: str, ttl_seconds: float = 3600.0, **claims: Any) -> str:
        """Mint a token for *sub* valid for *ttl_seconds*."""
        now = self._clock()
        payload: dict[str, Any] = {
            "sub": sub,
            "iat": now,
            "exp": now + ttl_seconds,
            "jti": uuid.uuid4().hex,
            **claims,
        }
        payload_bytes = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        encoded = base64.urlsafe_b64encode(payload_bytes).decode("ascii").rstrip("=")
        return f"{_TOKEN_PREFIX}.{encoded}.{self._sign(payload_bytes)}"

    def verify(self, token: str) -> str | None:
        """Return the token subject, or ``None`` if the token is not acceptable."""
        parts = token.split(".")
        if len(parts) != 3 or parts[0] != _TOKEN_PREFIX:
            return None
        _, encoded, signature = parts
        try:
            payload_bytes = base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))
        except (binascii.Error, ValueError):
            return None
        if not hmac.compare_digest(self._sign(payload_bytes), signature):
            return None
        try:
            payload = json.loads(payload_bytes)
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None
        sub = payload.get("sub")
        exp = payload.get("exp")
        if not isinstance(sub, str) or not sub:
            return None
        if not isinstance(exp, int | float) or exp <= self._clock():
            return None
        return sub


# ---------------------------------------------------------------------------
# Client IP
# ---------------------------------------------------------------------------


def get_client_ip(request: Request) -> str:
    """Return the caller's IP as reported by the edge proxy.

    Uses the first ``X-Forwarded-For`` entry, then ``X-Real-IP``, then the
    literal ``"local-dev"``.
    """
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return LOCAL_DEV_IP


def hash_client_ip(ip: str, salt: str) -> str:
    """Salted, keyed hash of *ip*; the raw address is never stored."""
    return hmac.new(salt.encode("utf-8"), ip.encode("utf-8"), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class IdentityResolver:
    """Map a request to the principal its scans and quota belong to."""

    def __init__(
        self,
        verifier: TokenVerifier,
        ip_hash_salt: str,
        cookie_name: str = "session",
    ) -> None:
        self._verifier = verifier
        self._salt = ip_hash_salt
        self._cookie_name = cookie_name

    def _credential(self, request: Request) -> str | None:
        auth_header = request.headers.get("authorization", "")
        if auth_header[:7].lower() == "bearer ":
            token = auth_header[7:].strip()
            if token:
                return token
        cookie = request.cookies.get(self._cookie_name)
        return cookie or None

    def anonymous_id(self, request: Request) -> str:
        return hash_client_ip(get_client_ip(request), self._salt)

    def resolve(self, request: Request) -> Principal:
        """Return the request's principal; invalid credentials degrade to anonymous."""
        token = self._credential(request)
        if token is not None:
            try:
                subject = self._verifier.verify(token)
            except Exception:
                logger.warning("Token verifier raised; treating request as anonymous", exc_info=True)
                subject = None
            if subject:
                return Principal(kind=PrincipalKind.AUTHENTICATED, id=subject)
            logger.debug("Invalid or expired credential on %s; resolving as anonymous", request.url.path)
        return Principal(kind=PrincipalKind.ANONYMOUS, id=self.anonymous_id(request))
