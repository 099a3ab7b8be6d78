"""Tests for session tokens, client IP extraction and principal resolution."""

from __future__ import annotations

import base64
import json

import pytest
from scan_api.identity import (
    LOCAL_DEV_IP,
    HMACTokenVerifier,
    IdentityResolver,
    get_client_ip,
    hash_client_ip,
)
from scan_engine.models.quota import PrincipalKind
from starlette.requests import Request

_SECRET = "unit-test-secret"
_SALT = "unit-test-salt"


def _request(headers: dict[str, str] | None = None, cookies: str | None = None) -> Request:
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    if cookies:
        raw.append((b"cookie", cookies.encode()))
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/api/v1/quota",
        "headers": raw,
        "query_string": b"",
    }
    return Request(scope)


# ---------------------------------------------------------------------------
# HMACTokenVerifier
# ---------------------------------------------------------------------------


class TestHMACTokenVerifier:
    def test_issued_token_verifies(self) -> None:
        verifier = HMACTokenVerifier(_SECRET)
        token = verifier.issue("user-42")
        assert token.startswith("gsdev.")
        assert verifier.verify(token) == "user-42"

    def test_expired_token_rejected(self) -> None:
        now = [1_000.0]
        verifier = HMACTokenVerifier(_SECRET, clock=lambda: now[0])
        token = verifier.issue("user-42", ttl_seconds=60)
        now[0] += 61
        assert verifier.verify(token) is None

    def test_wrong_secret_rejected(self) -> None:
        token = HMACTokenVerifier("other-secret").issue("user-42")
        assert HMACTokenVerifier(_SECRET).verify(token) is None

    def test_tampered_payload_rejected(self) -> None:
        verifier = HMACTokenVerifier(_SECRET)
        prefix, _, signature = verifier.issue("user-42").split(".")
        forged = base64.urlsafe_b64encode(json.dumps({"sub": "admin", "exp": 9e12}).encode()).decode()
        assert verifier.verify(f"{prefix}.{forged.rstrip('=')}.{signature}") is None

    @pytest.mark.parametrize(
        "token",
        ["", "garbage", "gsdev.only-two", "otherdev.abc.def", "gsdev.!!!.abc"],
    )
    def test_malformed_tokens(self, token: str) -> None:
        assert HMACTokenVerifier(_SECRET).verify(token) is None

    def test_empty_subject_rejected(self) -> None:
        verifier = HMACTokenVerifier(_SECRET)
        assert verifier.verify(verifier.issue("")) is None

    def test_empty_secret_refused(self) -> None:
        with pytest.raises(ValueError):
            HMACTokenVerifier("")


# ---------------------------------------------------------------------------
# Client IP
# ---------------------------------------------------------------------------


class TestClientIp:
    def test_first_forwarded_entry_wins(self) -> None:
        request = _request({"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "X-Real-IP": "198.51.100.2"})
        assert get_client_ip(request) == "203.0.113.7"

    def test_real_ip_fallback(self) -> None:
        assert get_client_ip(_request({"X-Real-IP": "198.51.100.2"})) == "198.51.100.2"

    def test_local_dev_fallback(self) -> None:
        assert get_client_ip(_request()) == LOCAL_DEV_IP

    def test_hash_is_salted_and_stable(self) -> None:
        assert hash_client_ip("203.0.113.7", _SALT) == hash_client_ip("203.0.113.7", _SALT)
        assert hash_client_ip("203.0.113.7", _SALT) != hash_client_ip("203.0.113.7", "other")
        assert "203.0.113.7" not in hash_client_ip("203.0.113.7", _SALT)


# ---------------------------------------------------------------------------
# IdentityResolver
# ---------------------------------------------------------------------------


class TestIdentityResolver:
    @pytest.fixture()
    def resolver(self) -> IdentityResolver:
        return IdentityResolver(HMACTokenVerifier(_SECRET), _SALT)

    def test_bearer_token_resolves_authenticated(self, resolver: IdentityResolver) -> None:
        token = HMACTokenVerifier(_SECRET).issue("user-42")
        principal = resolver.resolve(_request({"Authorization": f"Bearer {token}"}))
        assert principal.kind == PrincipalKind.AUTHENTICATED
        assert principal.id == "user-42"

    def test_session_cookie_resolves_authenticated(self, resolver: IdentityResolver) -> None:
        token = HMACTokenVerifier(_SECRET).issue("user-7")
        principal = resolver.resolve(_request(cookies=f"session={token}"))
        assert principal.is_authenticated
        assert principal.id == "user-7"

    def test_invalid_token_degrades_to_anonymous(self, resolver: IdentityResolver) -> None:
        request = _request({"Authorization": "Bearer nope", "X-Forwarded-For": "203.0.113.7"})
        principal = resolver.resolve(request)
        assert principal.kind == PrincipalKind.ANONYMOUS
        assert principal.id == hash_client_ip("203.0.113.7", _SALT)

    def test_raising_verifier_degrades_to_anonymous(self) -> None:
        class _Exploding:
            def verify(self, token: str) -> str | None:
                raise RuntimeError("identity provider down")

        resolver = IdentityResolver(_Exploding(), _SALT)
        principal = resolver.resolve(_request({"Authorization": "Bearer abc"}))
        assert principal.kind == PrincipalKind.ANONYMOUS

    def test_anonymous_id_matches_local_dev_hash(self, resolver: IdentityResolver) -> None:
        assert resolver.anonymous_id(_request()) == hash_client_ip(LOCAL_DEV_IP, _SALT)
