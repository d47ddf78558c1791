from __future__ import annotations

import json
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

from safescan import __version__
from safescan.canonical import canonicalize
from safescan.community import CommunityRatingStore
from safescan.config import data_dir, load_dotenv, resolve_api_key, resolve_voter_id
from safescan.history import HistoryStore
from safescan.models import Policy, SafetyVerdict, VoteVerdict
from safescan.pipeline import ScanSession, ScanStatus
from safescan.policies import BUILTIN_PROFILES, load_builtin_policy, load_policy_file, policy_summary
from safescan.render import render_assessment, render_history
from safescan.reputation import ReputationClient
from safescan.resilience import ResilientReputationClient
from safescan.store import JsonHistoryRepository, JsonRatingRepository, clear_runtime

app = typer.Typer(help="SafeScan: QR and link safety checks backed by reputation and community votes")
policy_app = typer.Typer(help="Policy operations")
history_app = typer.Typer(help="Scan history operations")
app.add_typer(policy_app, name="policy")
app.add_typer(history_app, name="history")
console = Console()

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)


def _resolve_policy(profile: str, policy_file: Path | None) -> Policy:
    if policy_file:
        return load_policy_file(policy_file)
    if profile not in BUILTIN_PROFILES:
        console.print(
            f"[bold red]Invalid --profile:[/] {profile}. Expected one of: {', '.join(BUILTIN_PROFILES)}"
        )
        raise typer.Exit(2)
    return load_builtin_policy(profile)


def _history(policy: Policy) -> HistoryStore:
    return HistoryStore(
        JsonHistoryRepository(),
        max_entries=policy.history.max_entries,
        min_votes=policy.community.min_votes,
    )


def _session(policy: Policy, voter_id: str | None, with_reputation: bool = True) -> ScanSession:
    load_dotenv()
    reputation = None
    if with_reputation:
        client = ReputationClient(
            resolve_api_key(),
            base_url=policy.reputation.base_url,
            timeout_seconds=policy.reputation.timeout_seconds,
            submit_unknown=policy.reputation.submit_unknown,
        )
        reputation = ResilientReputationClient.from_limits(client, policy.resilience)
    return ScanSession(
        community=CommunityRatingStore(policy.community, JsonRatingRepository()),
        history=_history(policy),
        voter_id=resolve_voter_id(voter_id),
        reputation=reputation,
        min_votes=policy.community.min_votes,
    )


@app.command("version")
def version() -> None:
    console.print(f"safescan {__version__}")


@app.command("scan")
def scan_cmd(
    payload: str = typer.Argument(..., help="Decoded QR payload or URL"),
    profile: str = typer.Option("default", "--profile", "--policy-profile", help="Built-in policy profile"),
    policy_file: Path | None = typer.Option(None, "--policy", help="Custom policy file"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
    voter_id: str | None = typer.Option(None, "--voter-id", help="Voter identity for this session"),
    fail_on: str = typer.Option("unsafe", "--fail-on", help="Exit non-zero on unsafe, unknown, or never"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    _configure_logging(verbose)
    if format not in {"text", "json"}:
        console.print("[bold red]Invalid --format:[/] expected text or json")
        raise typer.Exit(2)
    if fail_on not in {"unsafe", "unknown", "never"}:
        console.print("[bold red]Invalid --fail-on:[/] expected unsafe, unknown, or never")
        raise typer.Exit(2)
    policy = _resolve_policy(profile, policy_file)

    with _session(policy, voter_id) as session:
        outcome = session.scan(payload)

    if outcome.status == ScanStatus.INVALID:
        console.print("[bold red]Invalid input:[/] the payload is empty")
        raise typer.Exit(2)

    entry = outcome.entry
    assessment = entry.assessment if entry is not None else outcome.assessment
    if assessment is None or outcome.identifier is None:
        console.print(f"[bold red]Scan did not complete:[/] {outcome.status.value}")
        raise typer.Exit(2)
    status = entry.safety_status if entry is not None else assessment.verdict

    if format == "json":
        doc = {
            "status": outcome.status.value,
            "identifier": outcome.identifier.canonical,
            "identifier_hash": outcome.identifier.hash,
            "safety_status": status.value,
            "assessment": json.loads(assessment.model_dump_json()),
        }
        typer.echo(json.dumps(doc, indent=2))
    else:
        if outcome.status == ScanStatus.DUPLICATE:
            console.print("[dim]Already scanned; showing the recorded result.[/dim]")
        render_assessment(outcome.identifier.canonical, assessment, console=console, status=status)

    if fail_on == "unsafe" and status == SafetyVerdict.UNSAFE:
        raise typer.Exit(1)
    if fail_on == "unknown" and status in {SafetyVerdict.UNSAFE, SafetyVerdict.UNKNOWN}:
        raise typer.Exit(1)


def _cast(payload: str, verdict: VoteVerdict | None, voter_id: str | None, profile: str) -> None:
    _configure_logging(False)
    identifier = canonicalize(payload)
    if identifier is None:
        console.print("[bold red]Invalid input:[/] the payload is empty")
        raise typer.Exit(2)
    policy = _resolve_policy(profile, None)
    with _session(policy, voter_id, with_reputation=False) as session:
        outcome = session.vote_on(identifier, verdict)
    if not outcome.accepted:
        reason = outcome.rejection.value if outcome.rejection else "rejected"
        console.print(f"[bold red]Vote rejected:[/] {reason}")
        raise typer.Exit(1)
    rating = outcome.rating
    counts = f"{rating.safe_count} safe / {rating.unsafe_count} unsafe" if rating else "no votes"
    action = "Retracted vote" if verdict is None else f"Recorded {verdict.value} vote"
    console.print(f"{action} for {identifier.canonical} ({counts})")


@app.command("vote")
def vote_cmd(
    payload: str = typer.Argument(..., help="Decoded QR payload or URL"),
    verdict: VoteVerdict = typer.Argument(..., help="safe or unsafe"),
    voter_id: str | None = typer.Option(None, "--voter-id", help="Voter identity"),
    profile: str = typer.Option("default", "--profile", help="Built-in policy profile"),
) -> None:
    _cast(payload, verdict, voter_id, profile)


@app.command("retract")
def retract_cmd(
    payload: str = typer.Argument(..., help="Decoded QR payload or URL"),
    voter_id: str | None = typer.Option(None, "--voter-id", help="Voter identity"),
    profile: str = typer.Option("default", "--profile", help="Built-in policy profile"),
) -> None:
    _cast(payload, None, voter_id, profile)


@history_app.command("list")
def history_list(
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
    limit: int = typer.Option(20, "--limit", help="Maximum entries to show"),
    profile: str = typer.Option("default", "--profile", help="Built-in policy profile"),
) -> None:
    if format not in {"text", "json"} or limit < 1:
        console.print("[bold red]Invalid options:[/] expected --format text|json and --limit >= 1")
        raise typer.Exit(2)
    entries = _history(_resolve_policy(profile, None)).entries()[:limit]
    if format == "json":
        typer.echo(json.dumps([json.loads(e.model_dump_json()) for e in entries], indent=2))
    else:
        render_history(entries, console=console)


@history_app.command("clear")
def history_clear(
    keep_seeded: bool = typer.Option(False, "--keep-seeded", help="Keep demo entries"),
) -> None:
    removed = _history(load_builtin_policy()).clear(keep_seeded=keep_seeded)
    console.print(f"Removed {removed} history entries")


@policy_app.command("show")
def policy_show(profile: str = typer.Option("default", "--profile")) -> None:
    policy = _resolve_policy(profile, None)
    console.print(Panel(policy.model_dump_json(indent=2), title=policy.name))


@policy_app.command("validate")
def policy_validate(path: Path = typer.Argument(..., exists=True, readable=True)) -> None:
    policy = load_policy_file(path)
    console.print(f"[green]Valid policy:[/] {policy_summary(policy)}")


@app.command("reset")
def reset_cmd() -> None:
    clear_runtime()
    console.print(f"Cleared local state under {data_dir()}")


if __name__ == "__main__":
    app()
