"""CLI — Change set gate commands."""

from __future__ import annotations

import asyncio
import json
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, AsyncIterator, Awaitable, Callable, TypeVar

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from changegate.config import Settings
from changegate.exceptions import ChangeGateError, ConcurrentRunRejectedError
from changegate.logging import configure_logging
from changegate.models import JobStatus, OrchestrationRun, PublishResult, RunOutcome
from changegate.orchestration.orchestrator import Orchestrator
from changegate.orchestration.state import (
    GateStateStore,
    MemoryGateStateStore,
    SQLiteGateStateStore,
)
from changegate.platform.base import RemotePlatform
from changegate.platform.github import GitHubPlatform

app = typer.Typer(help="Run, invalidate, and inspect change set merge gates.")
console = Console()

T = TypeVar("T")

ConfigOption = Annotated[
    Path | None, typer.Option("--config", "-c", help="Path to config.yaml.")
]

_STATUS_STYLES = {
    JobStatus.SUCCEEDED: "green",
    JobStatus.SKIPPED: "dim",
    JobStatus.FAILED: "red",
    JobStatus.TIMED_OUT: "red",
    JobStatus.RUNNING: "yellow",
    JobStatus.PENDING: "dim",
}


def _create_platform(settings: Settings) -> RemotePlatform:
    return GitHubPlatform(settings.platform)


def _create_store(settings: Settings) -> GateStateStore:
    if settings.state.backend == "memory":
        return MemoryGateStateStore()
    return SQLiteGateStateStore(settings.state.db_path)


def _load_settings(config: Path | None) -> Settings:
    settings = Settings.load(config_file=config)
    configure_logging(
        level=settings.logging.level,
        format=settings.logging.format,
        log_file=str(settings.logging.file) if settings.logging.file else None,
    )
    return settings


@asynccontextmanager
async def _open_orchestrator(settings: Settings) -> AsyncIterator[Orchestrator]:
    orchestrator = Orchestrator.from_settings(
        settings, _create_platform(settings), _create_store(settings)
    )
    await orchestrator.start()
    try:
        yield orchestrator
    finally:
        await orchestrator.close()


def _execute(config: Path | None, action: Callable[[Orchestrator], Awaitable[T]]) -> T:
    try:
        settings = _load_settings(config)
    except ValueError as exc:
        console.print(f"[red]Invalid configuration: {escape(str(exc))}[/red]")
        raise typer.Exit(1)

    async def _main() -> T:
        async with _open_orchestrator(settings) as orchestrator:
            return await action(orchestrator)

    try:
        return asyncio.run(_main())
    except ConcurrentRunRejectedError as exc:
        console.print(f"[yellow]{escape(exc.message)}[/yellow]")
        raise typer.Exit(2)
    except ChangeGateError as exc:
        console.print(f"[red]Error: {escape(exc.message)}[/red]")
        raise typer.Exit(1)


def _print_run(run: OrchestrationRun) -> None:
    table = Table(title=f"Run {run.run_id} — {run.change_set_id}")
    table.add_column("Node", style="cyan")
    table.add_column("Repository")
    table.add_column("Status")
    table.add_column("Handle")
    table.add_column("Detail")

    for name, job_run in run.job_runs.items():
        style = _STATUS_STYLES.get(job_run.status, "")
        detail = job_run.error or (job_run.reason.value if job_run.reason else "")
        table.add_row(
            name,
            job_run.repository,
            f"[{style}]{job_run.status.value}[/{style}]" if style else job_run.status.value,
            job_run.handle or "",
            escape(detail),
        )
    console.print(table)


@app.command("run")
def run(
    change_set: str = typer.Argument(help="Change set id (the shared branch token)."),
    config: ConfigOption = None,
    json_output: bool = typer.Option(False, "--json", help="Print the run as JSON."),
) -> None:
    """Validate a change set across every repository and publish the gate."""
    result = _execute(config, lambda o: o.run_orchestration(change_set))

    if json_output:
        console.print_json(json.dumps(result.to_dict()))
    else:
        _print_run(result)

    if result.outcome != RunOutcome.SUCCEEDED:
        console.print(f"[red]Run failed[/red]{' (aborted)' if result.aborted else ''}")
        raise typer.Exit(1)
    if result.publish_result == PublishResult.SUPPRESSED:
        console.print("[yellow]Run succeeded but the change set moved on; publish suppressed.[/yellow]")
        raise typer.Exit(1)
    console.print("[green]Change set validated; merge gate published.[/green]")


@app.command("invalidate")
def invalidate(
    change_set: str = typer.Argument(help="Change set id (the shared branch token)."),
    config: ConfigOption = None,
) -> None:
    """Record that a revision in the change set was created or updated."""
    state = _execute(config, lambda o: o.invalidate(change_set))
    console.print(
        f"[green]Invalidated[/green] {change_set} — generation {state.generation}"
    )


@app.command("publish-test-signal")
def publish_test_signal(
    change_set: str = typer.Argument(help="Change set id (the shared branch token)."),
    repository: str = typer.Argument(help="Repository to write the check on."),
    config: ConfigOption = None,
) -> None:
    """Write a diagnostic success check on one repository, bypassing the build graph."""
    revision = _execute(config, lambda o: o.publish_test_signal(change_set, repository))
    console.print(f"[green]Test signal written[/green] on {repository}@{revision}")


@app.command("status")
def status(
    change_set: str = typer.Argument(help="Change set id (the shared branch token)."),
    config: ConfigOption = None,
    json_output: bool = typer.Option(False, "--json"),
) -> None:
    """Show the gate state of a change set."""
    state = _execute(config, lambda o: o.gate_state(change_set))

    if json_output:
        console.print_json(json.dumps(state.to_dict()))
        return

    console.print(f"[bold]Change set:[/bold] {state.change_set_id}")
    console.print(f"[bold]Status:[/bold] {state.status.value}")
    console.print(f"[bold]Generation:[/bold] {state.generation}")
    if state.active_run_id:
        console.print(f"[bold]Running:[/bold] {state.active_run_id}")
        if state.lease_expires_at is not None:
            remaining = max(state.lease_expires_at - time.time(), 0)
            console.print(f"[bold]Lease:[/bold] {remaining:.0f}s left")

    table = Table(title="Status checks")
    table.add_column("Repository", style="cyan")
    table.add_column("Revision")
    table.add_column("State")
    for repo, record in sorted(state.checks.items()):
        table.add_row(repo, record.revision, record.state.value)
    console.print(table)
