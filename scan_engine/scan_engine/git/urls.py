"""Repository URL validation, normalisation, and identity.

``generate_repo_id`` is the single source of the repository cache key:
every URL spelling of the same repository (case, trailing slash, ``.git``
suffix) maps to the same 16-hex-character id.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from urllib.parse import urlsplit

from scan_engine.models.analysis import RepoProvider

MAX_URL_LENGTH = 500

_PROVIDER_HOSTS: dict[str, RepoProvider] = {
    "github.com": RepoProvider.GITHUB,
    "gitlab.com": RepoProvider.GITLAB,
    "bitbucket.org": RepoProvider.BITBUCKET,
}

# Script-ish payloads that must never reach the clone step or a results page.
_SUSPICIOUS_PATTERNS: tuple[str, ...] = (
    "javascript:",
    "data:",
    "vbscript:",
    "<script",
    "onerror=",
    "onclick=",
)

# Loopback, private, and link-local targets (SSRF protection).
_BLOCKED_HOST_RE = re.compile(
    r"^(localhost|0\.0\.0\.0|127\.|10\.|192\.168\.|169\.254\.|172\.(1[6-9]|2\d|3[01])\.|\[?::1\]?$)",
    re.IGNORECASE,
)

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")


@dataclass(frozen=True)
class RepoCoordinates:
    """Provider, owner and name parsed from a repository URL."""

    provider: RepoProvider
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


def normalize_repo_url(url: str) -> str:
    """Lowercase *url* and strip one trailing ``/`` and one ``.git`` suffix.

    Both orders are handled, so ``.../repo``, ``.../repo/``, ``.../repo.git``
    and ``.../repo.git/`` normalise identically.
    """
    normalized = url.strip().lower()
    if normalized.endswith("/"):
        normalized = normalized[:-1]
    if normalized.endswith(".git"):
        normalized = normalized[: -len(".git")]
    if normalized.endswith("/"):
        normalized = normalized[:-1]
    return normalized


def generate_repo_id(url: str) -> str:
    """Return the first 16 hex characters of SHA-256 over the normalised URL."""
    return hashlib.sha256(normalize_repo_url(url).encode("utf-8")).hexdigest()[:16]


def parse_repo_url(url: str) -> RepoCoordinates:
    """Extract provider, owner and repository name from *url*.

    Raises
    ------
    ValueError
        If the URL has no ``owner/name`` path.
    """
    parts = urlsplit(url.strip())
    host = (parts.hostname or "").lower()
    if host.startswith("www."):
        host = host[len("www.") :]
    provider = _PROVIDER_HOSTS.get(host, RepoProvider.OTHER)

    segments = [segment for segment in parts.path.split("/") if segment]
    if len(segments) < 2:
        raise ValueError("Repository URL must include an owner and a repository name")
    owner, name = segments[0], segments[1]
    if name.lower().endswith(".git"):
        name = name[: -len(".git")]
    if not name or not _SEGMENT_RE.match(owner) or not _SEGMENT_RE.match(name):
        raise ValueError("Repository URL contains an invalid owner or repository name")
    return RepoCoordinates(provider=provider, owner=owner, name=name)


def validate_repo_url(url: str) -> str:
    """Validate a user-submitted repository URL and return it trimmed.

    Rules: non-empty, at most :data:`MAX_URL_LENGTH` characters, ``https``
    only, hosted on GitHub, GitLab or Bitbucket, no script-like payloads,
    and no loopback or private-network host.

    Raises
    ------
    ValueError
        With a user-facing message describing the first violated rule.
    """
    cleaned = (url or "").strip()
    if not cleaned:
        raise ValueError("Repository URL is required")
    if len(cleaned) > MAX_URL_LENGTH:
        raise ValueError(f"Repository URL must be at most {MAX_URL_LENGTH} characters")

    lowered = cleaned.lower()
    if any(pattern in lowered for pattern in _SUSPICIOUS_PATTERNS):
        raise ValueError("Repository URL contains disallowed content")
    if lowered.startswith("file://"):
        raise ValueError("Local file URLs are not allowed")
    if not lowered.startswith("https://"):
        raise ValueError("Only https:// repository URLs are supported")

    parts = urlsplit(cleaned)
    host = (parts.hostname or "").lower()
    if not host or _BLOCKED_HOST_RE.match(host):
        raise ValueError("Repository URL points to a disallowed host")
    if parts.username or parts.password:
        raise ValueError("Repository URL must not contain credentials")
    if parts.port is not None:
        raise ValueError("Repository URL must not specify a port")

    bare_host = host[len("www.") :] if host.startswith("www.") else host
    if bare_host not in _PROVIDER_HOSTS:
        raise ValueError("Only GitHub, GitLab and Bitbucket repositories are supported")

    parse_repo_url(cleaned)
    return cleaned
