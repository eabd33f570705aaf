"""Conductor command line interface.

Every command reads ConductorSettings from CONDUCTOR_* environment
variables, talks to GitHub and the configured spawn ledger, and runs the
same orchestrator code paths as the webhook server.

Examples:
    conductor trigger --issue 42 --dry-run
    conductor trigger --all
    conductor complete --pr 57
    conductor watch --interval 60
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, List, Optional, TypeVar

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from src.conductor import __version__
from src.conductor.config import get_settings
from src.conductor.events.emitter import create_event_emitter
from src.conductor.github.client import GitHubClient
from src.conductor.log import configure_logging
from src.conductor.orchestrator import OrchestrationResult, Orchestrator, build_orchestrator
from src.conductor.spawn.models import SpawnResult
from src.conductor.spawn.repository import close_spawn_repository, open_spawn_repository
from src.conductor.state.machine import TransitionPlan

app = typer.Typer(
    name="conductor",
    help="Issue-driven agent orchestration for GitHub repositories",
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
)
console = Console()

T = TypeVar("T")


@asynccontextmanager
async def open_orchestrator() -> AsyncIterator[Orchestrator]:
    """Build an orchestrator from the environment and close it afterwards."""
    settings = get_settings()
    configure_logging(settings.log_level, json_output=False)

    github_client = GitHubClient(
        token=settings.github_token,
        base_url=settings.github_base_url,
        max_retries=settings.github_max_retries,
        base_delay=settings.github_backoff_base_seconds,
        max_delay=settings.github_backoff_max_seconds,
        timeout=settings.github_timeout_seconds,
    )
    spawn_repository = await open_spawn_repository(
        settings.database_url, settings.spawn_state_path
    )
    event_emitter = create_event_emitter()
    try:
        yield build_orchestrator(settings, github_client, spawn_repository, event_emitter)
    finally:
        await event_emitter.close()
        await close_spawn_repository(spawn_repository)
        await github_client.close()


def _run(operation: Callable[[Orchestrator], Awaitable[T]]) -> T:
    """Run an orchestrator operation, turning failures into exit code 1."""

    async def runner() -> T:
        async with open_orchestrator() as orchestrator:
            return await operation(orchestrator)

    try:
        return asyncio.run(runner())
    except ValidationError as e:
        console.print(f"❌ Configuration error: {e}")
        raise typer.Exit(1)
    except Exception as e:
        console.print(f"❌ Error: {e}")
        raise typer.Exit(1)


def _describe_plan(plan: TransitionPlan) -> str:
    if plan.is_noop:
        return f"{plan.from_state.value} (no change: {plan.reason})"
    parts = [f"{plan.from_state.value} → {plan.to_state.value}"]
    if plan.remove_labels:
        parts.append("-" + ",-".join(plan.remove_labels))
    if plan.add_labels:
        parts.append("+" + ",+".join(plan.add_labels))
    if plan.comments:
        parts.append(f"{len(plan.comments)} comment(s)")
    if plan.close_issue:
        parts.append("close")
    return " ".join(parts)


def _describe_spawn(spawn: Optional[SpawnResult]) -> str:
    if spawn is None:
        return "-"
    text = f"{spawn.outcome.value} gen {spawn.generation} ({spawn.agent_type})"
    if spawn.reason:
        text += escape(f" [{spawn.reason}]")
    return text


def _results_table(results: List[OrchestrationResult], title: str) -> Table:
    table = Table(title=title)
    table.add_column("Issue", style="cyan")
    table.add_column("Transition", style="green")
    table.add_column("Spawn", style="magenta")
    table.add_column("Notes")

    for result in results:
        issue = f"#{result.issue_number}" if result.issue_number else "-"
        transition = "; ".join(_describe_plan(p) for p in result.plans) or "-"
        notes = escape(result.error or result.skipped or "")
        table.add_row(issue, transition, _describe_spawn(result.spawn), notes)
    return table


@app.command()
def trigger(
    issue: Optional[int] = typer.Option(None, "--issue", "-i", help="Issue number to evaluate"),
    all_issues: bool = typer.Option(False, "--all", help="Evaluate every open issue"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print mutations without applying them"),
) -> None:
    """Evaluate readiness and apply (or print) the resulting mutation."""
    if (issue is None) == (not all_issues):
        console.print("❌ Error: pass exactly one of --issue or --all")
        raise typer.Exit(1)

    if all_issues:
        results = _run(lambda o: o.scan(dry_run=dry_run))
    else:
        results = [_run(lambda o: o.trigger(issue, dry_run=dry_run))]

    title = "Trigger (dry run)" if dry_run else "Trigger"
    console.print(_results_table(results, title))

    if any(result.error for result in results):
        raise typer.Exit(1)


@app.command()
def analyze(
    issue: int = typer.Option(..., "--issue", "-i", help="Issue number to analyze"),
) -> None:
    """Print the readiness report for an issue."""
    view = _run(lambda o: o.analyze_issue(issue))
    report = view["report"]
    state = view["state"]
    conflict = view["conflict"]

    console.print(f"📋 Issue #{issue}: {escape(view['issue'].title)}")
    console.print(f"State: [bold]{state.value}[/bold]")
    if conflict is not None:
        console.print(
            f"⚠️  Label conflict {sorted(conflict.labels)} resolved as {conflict.resolved_state.value}"
        )

    if not report.has_section:
        console.print("No Clarifying Questions section; ready")
        return
    if report.malformed:
        console.print("❌ Clarifying Questions section could not be parsed; not ready")
        return

    table = Table(title="Clarifying Questions")
    table.add_column("#", style="cyan")
    table.add_column("Question")
    table.add_column("Answered", style="green")
    unanswered = set(report.unanswered_indices)
    for question in report.questions:
        table.add_row(
            str(question.index),
            escape(question.text),
            "no" if question.index in unanswered else "yes",
        )
    console.print(table)

    if not report.contiguous:
        console.print("⚠️  Question numbering is not contiguous")
    verdict = "✅ ready" if report.ready else f"⏳ waiting on {report.unanswered_indices}"
    console.print(verdict)


@app.command(name="next")
def next_issue(
    dry_run: bool = typer.Option(False, "--dry-run", help="Select without spawning"),
) -> None:
    """Select the next ready issue by priority and spawn an agent for it."""
    selected, spawn = _run(lambda o: o.assign_next(dry_run=dry_run))
    if selected is None:
        console.print("💤 No ready issues")
        return
    console.print(f"➡️  Selected #{selected.number}: {escape(selected.title)}")
    console.print(f"Spawn: {_describe_spawn(spawn)}")


@app.command()
def start(
    issue: int = typer.Option(..., "--issue", "-i", help="Issue an agent started on"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print mutations without applying them"),
) -> None:
    """Signal that work on an issue has started."""
    result = _run(lambda o: o.start_work(issue, dry_run=dry_run))
    console.print(_results_table([result], "Start work"))


@app.command()
def complete(
    pr: int = typer.Option(..., "--pr", help="Merged pull request number"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print mutations without applying them"),
) -> None:
    """Run the completion handler for a merged pull request."""
    result = _run(lambda o: o.complete_pull_request(pr, dry_run=dry_run))
    if result.skipped == "pull_request_not_merged":
        console.print(f"Pull request #{pr} is not merged; nothing to do")
        return

    console.print(_results_table([result], "Completion"))
    if result.next_issue_number is not None:
        console.print(
            f"➡️  Next: #{result.next_issue_number} {_describe_spawn(result.next_spawn)}"
        )
    else:
        console.print("💤 No ready issues")


@app.command()
def reset(
    issue: int = typer.Option(..., "--issue", "-i", help="Issue whose spawn record to delete"),
) -> None:
    """Delete an issue's spawn record so a new trigger can be emitted."""
    deleted = _run(lambda o: o.reset(issue))
    if deleted:
        console.print(f"🗑️  Spawn record for #{issue} deleted")
    else:
        console.print(f"No spawn record for #{issue}")


@app.command()
def records() -> None:
    """List the spawn ledger."""
    entries = _run(lambda o: o.records())
    if not entries:
        console.print("Spawn ledger is empty")
        return

    table = Table(title="Spawn Records")
    table.add_column("Issue", style="cyan")
    table.add_column("Code")
    table.add_column("Generation", style="green")
    table.add_column("Agent")
    table.add_column("Spawned At")
    for record in entries:
        table.add_row(
            f"#{record.issue_number}",
            record.issue_code,
            str(record.generation),
            record.agent_type,
            record.spawned_at.isoformat(),
        )
    console.print(table)


@app.command()
def watch(
    interval: Optional[int] = typer.Option(
        None, "--interval", help="Seconds between sweeps (default from settings)"
    ),
) -> None:
    """Sweep open issues periodically until interrupted."""

    async def loop(orchestrator: Orchestrator) -> int:
        cancel = asyncio.Event()
        event_loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                event_loop.add_signal_handler(sig, cancel.set)
            except NotImplementedError:
                pass
        seconds = interval or get_settings().scan_interval_seconds
        console.print(f"👀 Watching {orchestrator.full_repository} every {seconds}s")
        return await orchestrator.watch(seconds, cancel)

    sweeps = _run(loop)
    console.print(f"Stopped after {sweeps} sweep(s)")


@app.command()
def serve() -> None:
    """Run the webhook server."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("src.conductor.main:app", host=settings.host, port=settings.port)


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"Conductor v{__version__}")


if __name__ == "__main__":
    app()
