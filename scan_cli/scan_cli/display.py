"""Rich output formatting for the gitscope CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that JSON on *stdout* is never mixed with decoration.
"""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from scan_engine.models.analysis import CachedRepositoryAnalysis

_STATUS_COLOURS: dict[str, str] = {
    "succeeded": "green",
    "failed": "red",
    "running": "yellow",
    "queued": "dim",
}


def _coloured_status(status: str) -> str:
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


def _score_colour(score: int) -> str:
    if score >= 75:
        return "green"
    if score >= 50:
        return "yellow"
    return "red"


def display_analysis(console: Console, entry: CachedRepositoryAnalysis, *, cache_hit: bool = False) -> None:
    """Render an analysis summary with tech-stack and language tables.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    entry:
        The cached analysis to display.
    cache_hit:
        Whether the analysis was served from the repository cache.
    """
    analysis = entry.analysis
    meta = entry.metadata
    quality = analysis.code_quality.score
    header = [
        f"[bold]Repository:[/bold]  {meta.full_name} ({meta.provider.value})",
        f"[bold]Commit:[/bold]      {(entry.analyzed_commit or '(unknown)')[:12]} on {meta.branch or '(unknown)'}",
        f"[bold]Language:[/bold]    {analysis.primary_language}",
        f"[bold]Skill level:[/bold] {analysis.skill_level}",
        f"[bold]Quality:[/bold]     [{_score_colour(quality)}]{quality}/100[/{_score_colour(quality)}]",
        f"[bold]Complexity:[/bold]  {analysis.complexity.score}/100",
        f"[bold]Scans:[/bold]       {entry.total_scans}" + ("  [dim](cached)[/dim]" if cache_hit else ""),
    ]
    console.print(Panel("\n".join(header), title="Repository Analysis", border_style="blue"))
    console.print(analysis.description)

    if analysis.tech_stack:
        table = Table(title="Tech Stack", show_lines=False)
        table.add_column("Name", style="bold")
        table.add_column("Category")
        table.add_column("Version")
        table.add_column("Confidence", justify="right")
        for item in analysis.tech_stack:
            confidence = f"{item.confidence:.0f}%" if item.confidence is not None else "-"
            table.add_row(item.name, item.category, item.version or "-", confidence)
        console.print(table)

    languages = analysis.file_stats.language_breakdown
    if languages:
        lang_table = Table(title=f"Files ({analysis.file_stats.total_files} total)")
        lang_table.add_column("Language")
        lang_table.add_column("Lines", justify="right")
        for name, count in sorted(languages.items(), key=lambda kv: kv[1], reverse=True):
            lang_table.add_row(name, str(count))
        console.print(lang_table)

    if analysis.code_quality.issues:
        console.print("[bold]Issues:[/bold]")
        for issue in analysis.code_quality.issues:
            console.print(f"  - {issue}")


def display_scan(console: Console, scan: dict[str, Any]) -> None:
    """Render one scan document as returned by the API."""
    lines = [
        f"[bold]Scan:[/bold]     {scan.get('scan_id')}",
        f"[bold]Repo:[/bold]     {scan.get('repo_full_name') or scan.get('repo_url')}",
        f"[bold]Status:[/bold]   {_coloured_status(str(scan.get('status')))}",
        f"[bold]Progress:[/bold] {scan.get('progress', 0)}%",
    ]
    if scan.get("error_code"):
        lines.append(f"[bold]Error:[/bold]    {scan['error_code']}: {scan.get('error_message') or ''}")
    console.print(Panel("\n".join(lines), title="Scan", border_style="blue"))
