from __future__ import annotations

from datetime import UTC, datetime

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from safescan.models import CommunityRating, SafetyAssessment, SafetyVerdict, ScanHistoryEntry

VERDICT_STYLE = {
    SafetyVerdict.SAFE: "bold green",
    SafetyVerdict.UNKNOWN: "bold yellow",
    SafetyVerdict.UNSAFE: "bold red",
}


def _stamp(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=UTC).strftime("%Y-%m-%d %H:%M:%S")


def _community_line(rating: CommunityRating | None) -> str:
    if rating is None or rating.total_count == 0:
        return "no votes"
    return f"{rating.safe_count} safe / {rating.unsafe_count} unsafe ({rating.total_count} votes)"


def _reputation_line(assessment: SafetyAssessment) -> str:
    rep = assessment.reputation
    if rep is None:
        return "not checked"
    if rep.failure is not None:
        return f"{rep.state.value} ({rep.failure.value})"
    if rep.total_engines:
        return f"{rep.state.value}: {rep.malicious_count}/{rep.total_engines} engines flagged"
    return rep.state.value


def render_assessment(
    identifier: str,
    assessment: SafetyAssessment,
    console: Console | None = None,
    status: SafetyVerdict | None = None,
) -> None:
    console = console or Console()
    shown = status or assessment.verdict

    summary = (
        f"[bold]Identifier:[/bold] {identifier}\n"
        f"[bold]Confidence:[/bold] {assessment.confidence:.0%}\n"
        f"[bold]Reputation:[/bold] {_reputation_line(assessment)}\n"
        f"[bold]Community:[/bold] {_community_line(assessment.community)}"
    )
    if assessment.reputation is not None and assessment.reputation.report_link:
        summary += f"\n[bold]Report:[/bold] {assessment.reputation.report_link}"
    console.print(
        Panel(
            summary,
            title=f"Verdict: [{VERDICT_STYLE[shown]}]{shown.value.upper()}[/]",
            border_style=VERDICT_STYLE[shown],
        )
    )
    for warning in assessment.warnings:
        console.print(f"[yellow]! {warning}[/yellow]")


def render_history(entries: list[ScanHistoryEntry], console: Console | None = None) -> None:
    console = console or Console()
    if not entries:
        console.print("[dim]No scans recorded.[/dim]")
        return

    table = Table(title="Scan History", show_lines=True)
    table.add_column("When")
    table.add_column("Identifier", style="cyan")
    table.add_column("Status")
    table.add_column("Confidence")
    table.add_column("Your vote")
    table.add_column("Community")
    for entry in entries:
        style = VERDICT_STYLE[entry.safety_status]
        identifier = entry.identifier if len(entry.identifier) <= 60 else entry.identifier[:57] + "..."
        if entry.seeded:
            identifier += " [dim](demo)[/dim]"
        table.add_row(
            _stamp(entry.timestamp),
            identifier,
            f"[{style}]{entry.safety_status.value}[/]",
            f"{entry.assessment.confidence:.0%}",
            entry.user_vote.value if entry.user_vote else "-",
            _community_line(entry.community_snapshot),
        )
    console.print(table)
