"""Tests for the gitscope CLI commands.

Covers:
- analyze: URL validation, human and ``--json`` output, engine failures
- submit / status / cancel / quota against a mocked API helper
- token: minting in dev, refusal outside dev
- _api_request: auth header, HTTP error and connection error handling
"""

from __future__ import annotations

import io
import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import typer
from rich.console import Console
from scan_api.identity import HMACTokenVerifier
from scan_cli.app import _api_request, app
from scan_engine.errors import CloneError
from scan_engine.models.analysis import (
    AnalysisResult,
    CachedRepositoryAnalysis,
    CodeQuality,
    Complexity,
    FileStats,
    RepositoryMetadata,
)
from scan_engine.pipeline.analyzer import PipelineOutcome
from typer.testing import CliRunner

runner = CliRunner()

_URL = "https://github.com/acme/widgets"


@pytest.fixture()
def outcome() -> PipelineOutcome:
    now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    entry = CachedRepositoryAnalysis(
        repo_id="0123456789abcdef",
        repo_url=_URL,
        analysis=AnalysisResult(
            description="A widget toolkit.",
            primary_language="Python",
            file_stats=FileStats(total_files=3, total_lines=90, language_breakdown={"Python": 90}),
            code_quality=CodeQuality(score=81, issues=["Sparse docs"]),
            skill_level="mid-level",
            complexity=Complexity(score=35),
        ),
        metadata=RepositoryMetadata(url=_URL, owner="acme", name="widgets", full_name="acme/widgets"),
        analyzed_commit="a" * 40,
        ai_model="fake-model",
        total_scans=2,
        last_scanned_at=now,
        created_at=now,
        updated_at=now,
    )
    return PipelineOutcome(analysis=entry, cache_hit=True)


@pytest.fixture()
def quiet_console():
    """Send Rich output to a buffer so stdout holds only machine output."""
    buffer = io.StringIO()
    with patch("scan_cli.app.console", Console(file=buffer, width=120)):
        yield buffer


# ---------------------------------------------------------------------------
# analyze
# ---------------------------------------------------------------------------


class TestAnalyze:
    def test_invalid_url_exits_2(self, quiet_console) -> None:
        with patch("scan_cli.app._run_local_analysis", new_callable=AsyncMock) as run:
            result = runner.invoke(app, ["analyze", "http://github.com/acme/widgets"])

        assert result.exit_code == 2
        assert "https://" in quiet_console.getvalue()
        run.assert_not_called()

    def test_json_output(self, quiet_console, outcome: PipelineOutcome) -> None:
        with patch("scan_cli.app._run_local_analysis", new=AsyncMock(return_value=outcome)):
            result = runner.invoke(app, ["--json", "analyze", _URL])

        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["cache_hit"] is True
        assert payload["analysis"]["primary_language"] == "Python"
        assert payload["analysis"]["code_quality"]["score"] == 81

    def test_human_output(self, quiet_console, outcome: PipelineOutcome) -> None:
        with patch("scan_cli.app._run_local_analysis", new=AsyncMock(return_value=outcome)):
            result = runner.invoke(app, ["analyze", _URL])

        assert result.exit_code == 0
        rendered = quiet_console.getvalue()
        assert "acme/widgets" in rendered
        assert "Sparse docs" in rendered

    def test_engine_failure_exits_1(self, quiet_console) -> None:
        failing = AsyncMock(side_effect=CloneError("Repository not found or not accessible"))
        with patch("scan_cli.app._run_local_analysis", new=failing):
            result = runner.invoke(app, ["analyze", _URL])

        assert result.exit_code == 1
        assert "Repository not found" in quiet_console.getvalue()

    def test_db_option_overrides_database_url(self, quiet_console, outcome: PipelineOutcome, tmp_path) -> None:
        run = AsyncMock(return_value=outcome)
        with patch("scan_cli.app._run_local_analysis", new=run):
            runner.invoke(app, ["analyze", _URL, "--db", str(tmp_path / "cache.db")])

        settings = run.await_args.args[1]
        assert settings.database_url.endswith("cache.db")
        assert settings.database_url.startswith("sqlite+aiosqlite:///")


# ---------------------------------------------------------------------------
# Remote API commands
# ---------------------------------------------------------------------------


class TestRemoteCommands:
    def test_submit(self, quiet_console) -> None:
        response = {"scan_id": "scan-1", "repo_id": "0123456789abcdef", "status": "queued"}
        with patch("scan_cli.app._api_request", return_value=response) as api:
            result = runner.invoke(app, ["--json", "submit", _URL, "--api-url", "http://api:8000"])

        assert result.exit_code == 0
        assert json.loads(result.stdout) == response
        api.assert_called_once_with("POST", "http://api:8000", "/api/v1/scans", body={"repo_url": _URL})

    def test_submit_rejects_bad_url_locally(self, quiet_console) -> None:
        with patch("scan_cli.app._api_request") as api:
            result = runner.invoke(app, ["submit", "https://localhost/a/b"])

        assert result.exit_code == 2
        api.assert_not_called()

    def test_status_renders_scan(self, quiet_console) -> None:
        scan = {
            "scan_id": "scan-1",
            "repo_url": _URL,
            "status": "running",
            "progress": 40,
            "error_code": None,
            "error_message": None,
        }
        with patch("scan_cli.app._api_request", return_value=scan):
            result = runner.invoke(app, ["status", "scan-1"])

        assert result.exit_code == 0
        assert "scan-1" in quiet_console.getvalue()

    def test_cancel_calls_cancel_endpoint(self, quiet_console) -> None:
        with patch("scan_cli.app._api_request", return_value={"scan_id": "scan-1"}) as api:
            runner.invoke(app, ["--json", "cancel", "scan-1"])

        assert api.call_args.args[:3] == ("POST", "http://localhost:8000", "/api/v1/scans/scan-1/cancel")

    def test_quota_unlimited(self, quiet_console) -> None:
        with patch("scan_cli.app._api_request", return_value={"used": 7, "limit": -1, "unlimited": True}):
            result = runner.invoke(app, ["quota"])

        assert result.exit_code == 0
        assert "unlimited" in quiet_console.getvalue()


# ---------------------------------------------------------------------------
# token
# ---------------------------------------------------------------------------


class TestToken:
    def test_mints_verifiable_token(self, monkeypatch, quiet_console) -> None:
        monkeypatch.setenv("API_SESSION_SECRET", "cli-test-secret")
        monkeypatch.setenv("API_PLATFORM_ENV", "dev")

        result = runner.invoke(app, ["token", "user-9", "--ttl", "120"])

        assert result.exit_code == 0
        assert HMACTokenVerifier("cli-test-secret").verify(result.stdout.strip()) == "user-9"

    def test_refuses_outside_dev(self, monkeypatch, quiet_console) -> None:
        monkeypatch.setenv("API_PLATFORM_ENV", "production")

        result = runner.invoke(app, ["token", "user-9"])

        assert result.exit_code == 2
        assert "dev environment" in quiet_console.getvalue()


# ---------------------------------------------------------------------------
# _api_request
# ---------------------------------------------------------------------------


class TestApiRequest:
    def _client(self, response: MagicMock | None = None, error: Exception | None = None) -> MagicMock:
        client = MagicMock()
        client.__enter__.return_value = client
        if error is not None:
            client.request.side_effect = error
        else:
            client.request.return_value = response
        return client

    def test_sends_bearer_token(self, monkeypatch) -> None:
        monkeypatch.setenv("GITSCOPE_API_TOKEN", "tok-123")
        response = MagicMock(content=b'{"ok": true}')
        response.json.return_value = {"ok": True}
        client = self._client(response)

        with patch("httpx.Client", return_value=client):
            assert _api_request("GET", "http://api/", "/api/v1/quota") == {"ok": True}

        kwargs = client.request.call_args.kwargs
        assert kwargs["headers"]["Authorization"] == "Bearer tok-123"
        assert client.request.call_args.args == ("GET", "http://api/api/v1/quota")

    def test_http_error_exits_3(self, monkeypatch, quiet_console) -> None:
        monkeypatch.delenv("GITSCOPE_API_TOKEN", raising=False)
        request = httpx.Request("POST", "http://api/api/v1/scans")
        error_response = httpx.Response(429, json={"detail": "Daily scan limit exceeded."}, request=request)
        response = MagicMock()
        response.raise_for_status.side_effect = httpx.HTTPStatusError(
            "429", request=request, response=error_response
        )

        with patch("httpx.Client", return_value=self._client(response)):
            with pytest.raises(typer.Exit) as exc_info:
                _api_request("POST", "http://api", "/api/v1/scans", body={"repo_url": _URL})

        assert exc_info.value.exit_code == 3
        assert "Daily scan limit exceeded." in quiet_console.getvalue()

    def test_connect_error_exits_3(self, quiet_console) -> None:
        error = httpx.ConnectError("refused")
        with patch("httpx.Client", return_value=self._client(error=error)):
            with pytest.raises(typer.Exit):
                _api_request("GET", "http://nowhere", "/api/v1/quota")

        assert "Cannot connect" in quiet_console.getvalue()
