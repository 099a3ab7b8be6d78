"""Git source provider: shallow clone, local HEAD inspection, remote SHA lookup.

All interaction with the ``git`` binary is done through :func:`subprocess.run`
with explicit timeouts and structured error handling so that callers receive
:class:`GitClientError` exceptions with descriptive messages rather than raw
subprocess failures.  Blocking calls are moved to worker threads so the
event loop keeps serving other scans.

Hosting-provider statistics (stars, forks, last update) come from the
provider's REST API via ``httpx``.  That lookup is best effort: any failure
yields ``None`` for those fields and never fails the scan.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx

from scan_engine.config import EngineSettings
from scan_engine.errors import CloneError, GitClientError, MetadataError
from scan_engine.git.urls import parse_repo_url
from scan_engine.models.analysis import RepoProvider, RepositoryMetadata

logger = logging.getLogger(__name__)

_USER_AGENT = "gitscope-analyzer"

_GIT_SHA_RE = re.compile(r"^[0-9a-fA-F]{40}$")
_GIT_BRANCH_RE = re.compile(r"^[A-Za-z0-9_./\-]+$")

# Never block on an interactive credential prompt for private repositories.
_GIT_ENV: dict[str, str] = {"GIT_TERMINAL_PROMPT": "0", "GIT_ASKPASS": "echo"}


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _run_git(
    cmd: list[str],
    cwd: Path | None,
    timeout: int,
) -> subprocess.CompletedProcess[str]:
    """Execute a git command and return the completed process.

    Parameters
    ----------
    cmd:
        Command list (e.g. ``["git", "rev-parse", "HEAD"]``).
    cwd:
        Working directory passed to the subprocess.
    timeout:
        Seconds before the process is killed.

    Raises
    ------
    GitClientError
        On non-zero exit, timeout, or if the process cannot be started.
    """
    try:
        return subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
            env={**os.environ, **_GIT_ENV},
        )
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        raise GitClientError(f"git command failed: {' '.join(cmd)}\nExit code {exc.returncode}: {stderr}") from exc
    except subprocess.TimeoutExpired as exc:
        raise GitClientError(f"git command timed out after {timeout}s: {' '.join(cmd)}") from exc
    except FileNotFoundError as exc:
        raise GitClientError("git executable not found. Ensure git is installed and on PATH.") from exc


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _as_int(value: Any) -> int | None:
    return value if isinstance(value, int) and not isinstance(value, bool) else None


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class GitRepositoryProvider:
    """Clone public repositories and describe them.

    Parameters
    ----------
    settings:
        Engine settings supplying git timeouts and the optional GitHub token.
    http_client:
        Shared ``httpx.AsyncClient`` for provider API calls.  When omitted a
        client is created and owned (closed by :meth:`aclose`).
    """

    def __init__(
        self,
        settings: EngineSettings,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._clone_timeout = settings.clone_timeout_seconds
        self._command_timeout = settings.git_command_timeout_seconds
        self._github_token = settings.github_token.get_secret_value() if settings.github_token else None
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.metadata_timeout_seconds),
            headers={"User-Agent": _USER_AGENT},
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    # -- clone ---------------------------------------------------------------

    async def clone(self, url: str, dest: Path) -> Path:
        """Shallow-clone *url* into *dest* (which must not exist yet).

        Raises
        ------
        CloneError
            If git fails: repository not found, private, or unreachable.
        """
        cmd = ["git", "clone", "--depth", "1", "--no-tags", "--", url, str(dest)]
        logger.info("Cloning %s", url)
        try:
            await asyncio.to_thread(_run_git, cmd, dest.parent, self._clone_timeout)
        except GitClientError as exc:
            logger.warning("Clone failed for %s: %s", url, exc)
            raise CloneError(f"Failed to clone repository {url}: {exc}") from exc
        return dest

    async def local_head(self, repo_path: Path) -> tuple[str | None, str | None]:
        """Return ``(branch, commit_sha)`` for a cloned working tree.

        Either element is ``None`` when git cannot report it.
        """
        branch: str | None = None
        sha: str | None = None
        try:
            proc = await asyncio.to_thread(
                _run_git, ["git", "rev-parse", "HEAD"], repo_path, self._command_timeout
            )
            sha = proc.stdout.strip() or None
        except GitClientError as exc:
            logger.warning("Failed to read commit SHA in %s: %s", repo_path, exc)
        try:
            proc = await asyncio.to_thread(
                _run_git, ["git", "rev-parse", "--abbrev-ref", "HEAD"], repo_path, self._command_timeout
            )
            branch = proc.stdout.strip() or None
        except GitClientError as exc:
            logger.warning("Failed to read branch name in %s: %s", repo_path, exc)
        return branch, sha

    # -- metadata ------------------------------------------------------------

    async def metadata(self, url: str, repo_path: Path) -> RepositoryMetadata:
        """Describe the repository cloned at *repo_path*.

        Branch and commit come from the local clone; stars, forks and the
        last update come from the provider API and fall back to ``None``.
        """
        coords = parse_repo_url(url)
        branch, sha = await self.local_head(repo_path)

        stats: dict[str, Any] = {}
        try:
            stats = await self._provider_stats(coords.provider, coords.owner, coords.name)
        except MetadataError as exc:
            logger.warning("Provider metadata unavailable for %s: %s", coords.full_name, exc)

        return RepositoryMetadata(
            url=url,
            owner=coords.owner,
            name=coords.name,
            full_name=coords.full_name,
            provider=coords.provider,
            branch=branch,
            commit_sha=sha,
            stars=stats.get("stars"),
            forks=stats.get("forks"),
            last_updated=stats.get("last_updated"),
        )

    async def _provider_stats(self, provider: RepoProvider, owner: str, name: str) -> dict[str, Any]:
        """Fetch popularity statistics from the hosting provider's REST API.

        Raises
        ------
        MetadataError
            On transport errors, non-2xx responses, or undecodable bodies.
        """
        headers: dict[str, str] = {}
        if provider == RepoProvider.GITHUB:
            endpoint = f"https://api.github.com/repos/{owner}/{name}"
            headers["Accept"] = "application/vnd.github+json"
            if self._github_token:
                headers["Authorization"] = f"Bearer {self._github_token}"
        elif provider == RepoProvider.GITLAB:
            endpoint = f"https://gitlab.com/api/v4/projects/{quote(f'{owner}/{name}', safe='')}"
        elif provider == RepoProvider.BITBUCKET:
            endpoint = f"https://api.bitbucket.org/2.0/repositories/{owner}/{name}"
        else:
            return {}

        try:
            response = await self._http.get(endpoint, headers=headers)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise MetadataError(f"{provider.value} API request failed: {exc}") from exc

        if not isinstance(body, dict):
            raise MetadataError(f"{provider.value} API returned an unexpected payload")

        if provider == RepoProvider.GITHUB:
            return {
                "stars": _as_int(body.get("stargazers_count")),
                "forks": _as_int(body.get("forks_count")),
                "last_updated": _parse_timestamp(body.get("pushed_at") or body.get("updated_at")),
            }
        if provider == RepoProvider.GITLAB:
            return {
                "stars": _as_int(body.get("star_count")),
                "forks": _as_int(body.get("forks_count")),
                "last_updated": _parse_timestamp(body.get("last_activity_at")),
            }
        return {"last_updated": _parse_timestamp(body.get("updated_on"))}

    # -- remote lookup ---------------------------------------------------------

    async def latest_commit_sha(self, url: str, branch: str | None = None) -> str | None:
        """Return the remote head SHA of *branch* (or ``HEAD``) without cloning.

        Returns ``None`` whenever the answer is inconclusive: network
        failure, unknown branch, or unparseable output.
        """
        ref = "HEAD"
        if branch:
            if not _GIT_BRANCH_RE.match(branch) or branch.startswith("-"):
                logger.warning("Refusing suspicious branch name %r for %s", branch, url)
                return None
            ref = f"refs/heads/{branch}"
        try:
            proc = await asyncio.to_thread(
                _run_git, ["git", "ls-remote", "--", url, ref], None, self._command_timeout
            )
        except GitClientError as exc:
            logger.info("Remote SHA lookup failed for %s (%s): %s", url, ref, exc)
            return None

        for line in proc.stdout.splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[1] == ref and _GIT_SHA_RE.match(parts[0]):
                return parts[0]
        return None
