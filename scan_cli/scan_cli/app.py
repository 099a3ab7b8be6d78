"""gitscope CLI application -- Typer-based developer interface.

Provides commands to analyse a repository locally (same pipeline and cache
as the service, backed by a local SQLite file), talk to a running API, mint
development session tokens, and serve the API.  Human-readable output goes
to *stderr* via Rich; ``--json`` writes machine-readable results to stdout.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn
from scan_engine.config import EngineSettings, load_engine_settings
from scan_engine.errors import ScanEngineError
from scan_engine.git.urls import validate_repo_url
from scan_engine.pipeline.analyzer import PipelineOutcome

from scan_cli.display import display_analysis, display_scan

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="gitscope",
    help="gitscope - AI analysis of public Git repositories",
    no_args_is_help=True,
)
console = Console(stderr=True)

_json_output: bool = False

_DEFAULT_API_URL = "http://localhost:8000"


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output  # noqa: PLW0603
    _json_output = json_mode


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


def _validated_url(repo_url: str) -> str:
    try:
        return validate_repo_url(repo_url)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2) from exc


async def _run_local_analysis(
    repo_url: str,
    settings: EngineSettings,
    on_progress: Any,
) -> PipelineOutcome:
    """Run the analysis pipeline against the local state database."""
    from scan_engine.git.git_client import GitRepositoryProvider
    from scan_engine.llm.llm_client import AnthropicAnalysisClient
    from scan_engine.pipeline.analyzer import AnalysisPipeline
    from scan_engine.state.database import create_tables, get_engine, get_session_factory

    engine = get_engine(settings.database_url)
    source = GitRepositoryProvider(settings)
    model = AnthropicAnalysisClient(settings)
    try:
        await create_tables(engine)
        pipeline = AnalysisPipeline(get_session_factory(engine), source, model, settings)
        return await pipeline.run(repo_url, on_progress)
    finally:
        await model.aclose()
        await source.aclose()
        await engine.dispose()


def _api_token() -> str | None:
    return os.environ.get("GITSCOPE_API_TOKEN") or None


def _api_request(
    method: str,
    api_url: str,
    path: str,
    *,
    body: dict[str, Any] | None = None,
    params: dict[str, Any] | None = None,
) -> Any:
    """Send a request to the gitscope API and return the decoded JSON body.

    The bearer token is read from ``GITSCOPE_API_TOKEN``; without one the
    server treats the caller as anonymous.
    """
    import httpx

    headers: dict[str, str] = {"Accept": "application/json"}
    token = _api_token()
    if token:
        headers["Authorization"] = f"Bearer {token}"

    url = f"{api_url.rstrip('/')}{path}"
    try:
        with httpx.Client(timeout=30.0) as client:
            response = client.request(method, url, headers=headers, json=body, params=params)
            response.raise_for_status()
            return response.json() if response.content else None
    except httpx.HTTPStatusError as exc:
        detail: Any = exc.response.text
        try:
            detail = exc.response.json().get("detail", detail)
        except ValueError:
            pass
        console.print(f"[red]API error ({exc.response.status_code}): {detail}[/red]")
        raise typer.Exit(code=3) from exc
    except httpx.ConnectError as exc:
        console.print(f"[red]Cannot connect to API at {api_url}: {exc}[/red]")
        raise typer.Exit(code=3) from exc


# ---------------------------------------------------------------------------
# analyze
# ---------------------------------------------------------------------------


@app.command()
def analyze(
    repo_url: str = typer.Argument(..., help="HTTPS URL of a GitHub, GitLab or Bitbucket repository."),
    db: Path | None = typer.Option(
        None,
        "--db",
        help="Local SQLite database for the repository cache.",
        envvar="GITSCOPE_DB",
    ),
) -> None:
    """Analyse a repository locally, reusing the cached result when it is current."""
    url = _validated_url(repo_url)
    settings = load_engine_settings()
    if db is not None:
        settings = settings.model_copy(update={"database_url": f"sqlite+aiosqlite:///{db}"})

    with Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task_id = progress.add_task("Analysing", total=100)

        async def _on_progress(pct: int) -> None:
            progress.update(task_id, completed=pct)

        try:
            outcome = asyncio.run(_run_local_analysis(url, settings, _on_progress))
        except ScanEngineError as exc:
            console.print(f"[red]Analysis failed: {exc}[/red]")
            raise typer.Exit(code=1) from exc
        progress.update(task_id, completed=100)

    if _json_output:
        _emit_json(
            {
                "cache_hit": outcome.cache_hit,
                **outcome.analysis.model_dump(mode="json"),
            }
        )
        return
    display_analysis(console, outcome.analysis, cache_hit=outcome.cache_hit)


# ---------------------------------------------------------------------------
# Remote API commands
# ---------------------------------------------------------------------------


@app.command()
def submit(
    repo_url: str = typer.Argument(..., help="Repository URL to scan."),
    api_url: str = typer.Option(_DEFAULT_API_URL, "--api-url", envvar="GITSCOPE_API_URL"),
) -> None:
    """Submit a scan to a running gitscope API."""
    url = _validated_url(repo_url)
    result = _api_request("POST", api_url, "/api/v1/scans", body={"repo_url": url})
    if _json_output:
        _emit_json(result)
        return
    console.print(f"[green]Scan queued:[/green] {result['scan_id']} (repo_id={result['repo_id']})")


@app.command()
def status(
    scan_id: str = typer.Argument(..., help="Scan id returned by submit."),
    api_url: str = typer.Option(_DEFAULT_API_URL, "--api-url", envvar="GITSCOPE_API_URL"),
) -> None:
    """Show the current state of a scan."""
    result = _api_request("GET", api_url, f"/api/v1/scans/{scan_id}")
    if _json_output:
        _emit_json(result)
        return
    display_scan(console, result)


@app.command()
def cancel(
    scan_id: str = typer.Argument(..., help="Scan id to cancel."),
    api_url: str = typer.Option(_DEFAULT_API_URL, "--api-url", envvar="GITSCOPE_API_URL"),
) -> None:
    """Cancel one of your scans."""
    result = _api_request("POST", api_url, f"/api/v1/scans/{scan_id}/cancel")
    if _json_output:
        _emit_json(result)
        return
    display_scan(console, result)


@app.command()
def quota(
    api_url: str = typer.Option(_DEFAULT_API_URL, "--api-url", envvar="GITSCOPE_API_URL"),
) -> None:
    """Show your remaining daily scan allowance."""
    result = _api_request("GET", api_url, "/api/v1/quota")
    if _json_output:
        _emit_json(result)
        return
    if result.get("unlimited"):
        console.print(f"Used {result['used']} scans (unlimited)")
    else:
        console.print(f"Used {result['used']}/{result['limit']} scans; resets at {result.get('reset_at') or '-'}")


# ---------------------------------------------------------------------------
# Development helpers
# ---------------------------------------------------------------------------


@app.command()
def token(
    subject: str = typer.Argument(..., help="User id to embed as the token subject."),
    ttl: int = typer.Option(3600, "--ttl", min=1, help="Token lifetime in seconds."),
) -> None:
    """Mint a session token signed with ``API_SESSION_SECRET`` (development only)."""
    from scan_api.config import PlatformEnv, load_api_settings
    from scan_api.identity import HMACTokenVerifier

    settings = load_api_settings()
    if settings.platform_env != PlatformEnv.DEV:
        console.print("[red]Refusing to mint tokens outside the dev environment.[/red]")
        raise typer.Exit(code=2)
    minted = HMACTokenVerifier(settings.session_secret.get_secret_value()).issue(subject, ttl_seconds=ttl)
    typer.echo(minted)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address."),
    port: int = typer.Option(8000, "--port", help="Bind port."),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes."),
) -> None:
    """Run the gitscope API with uvicorn."""
    import uvicorn

    console.print(f"[bold]Serving gitscope API on http://{host}:{port}[/bold]")
    uvicorn.run("scan_api.main:app", host=host, port=port, reload=reload)
