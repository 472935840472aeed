"""CLI entry point for the OAC execution engine.

Commands:
- oac doctor: Check git and the configured agent tools
- oac run: Execute a budgeted plan file
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import signal
import sys
from pathlib import Path

import click
import pydantic
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from oac import __version__
from oac.core.config import ExecutionConfig, load_config
from oac.core.errors import OacError
from oac.core.events import Event, EventBus, EventType
from oac.core.models import ExecutionPlan, JobStatus, RunResult
from oac.execution.agents.base import AgentProvider
from oac.execution.agents.registry import AdapterRegistry, default_registry
from oac.execution.engine import ExecutionEngine

console = Console()

_STATUS_STYLES = {
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
    JobStatus.ABORTED: "yellow",
}


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
    )


def _load_config_or_exit(config_path: str | None) -> ExecutionConfig:
    try:
        return load_config(config_path)
    except OacError as e:
        console.print(f"[red]Config error:[/red] {e.message}")
        sys.exit(1)


def _create_providers(registry: AdapterRegistry, provider_ids: list[str]) -> list[AgentProvider]:
    try:
        return [registry.create(provider_id) for provider_id in provider_ids]
    except OacError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        sys.exit(1)


def load_plan(path: Path) -> ExecutionPlan:
    """Read an ExecutionPlan from a YAML or JSON file."""
    try:
        raw = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise click.ClickException(f"Invalid plan file {path}: {e}") from e
    try:
        return ExecutionPlan.model_validate(raw or {})
    except pydantic.ValidationError as e:
        raise click.ClickException(f"Invalid plan in {path}: {e}") from e


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """OAC - dispatch planned tasks to coding agents in isolated worktrees."""
    _setup_logging(verbose)


@main.command()
@click.option("--config", "-c", "config_path", type=click.Path(), help="Config file path")
def doctor(config_path: str | None) -> None:
    """Check that git and the configured agent tools are usable."""
    config = _load_config_or_exit(config_path)
    registry = default_registry()

    table = Table(title="Environment")
    table.add_column("Check", style="cyan")
    table.add_column("Status")
    table.add_column("Details", style="dim")

    git_path = shutil.which("git")
    table.add_row(
        "git",
        "[green]ok[/green]" if git_path else "[red]missing[/red]",
        git_path or "git is required for worktree sandboxes",
    )

    async def check_all() -> list[tuple[str, object]]:
        results = []
        for provider_id in config.providers:
            try:
                provider = registry.create(provider_id)
            except OacError as e:
                results.append((provider_id, e))
                continue
            results.append((provider_id, await provider.check_availability()))
        return results

    available = 0
    for provider_id, outcome in asyncio.run(check_all()):
        if isinstance(outcome, OacError):
            table.add_row(provider_id, "[red]unknown[/red]", outcome.message)
        elif outcome.available:
            available += 1
            table.add_row(provider_id, "[green]ok[/green]", outcome.version or "")
        else:
            table.add_row(provider_id, "[red]unavailable[/red]", outcome.error or "")

    console.print(table)
    if not git_path or available == 0:
        sys.exit(1)


def _print_progress(event: Event) -> None:
    short_id = (event.job_id or "")[:8]
    if event.event_type == EventType.JOB_STARTED:
        console.print(
            f"[blue]started[/blue] {event.task_id} [dim]({short_id}, attempt "
            f"{event.payload.get('attempt')}, {event.payload.get('provider')})[/dim]"
        )
    elif event.event_type == EventType.JOB_RETRYING:
        error = event.payload.get("error", {})
        console.print(
            f"[yellow]retrying[/yellow] {event.task_id} in {event.payload.get('delay', 0):.1f}s: "
            f"{error.get('message', '')}"
        )
    elif event.event_type in (EventType.JOB_COMPLETED, EventType.JOB_FAILED, EventType.JOB_ABORTED):
        label = event.event_type.value.split(".", 1)[1]
        style = {"completed": "green", "failed": "red", "aborted": "yellow"}[label]
        console.print(f"[{style}]{label}[/{style}] {event.task_id} [dim]({short_id})[/dim]")


def _render_result(result: RunResult) -> Table:
    table = Table(title="Run result")
    table.add_column("Task", style="cyan")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Provider")
    table.add_column("Tokens", justify="right")
    table.add_column("Error", style="dim")

    for job in result.jobs:
        style = _STATUS_STYLES.get(job.status, "white")
        tokens = job.result.total_tokens_used if job.result else 0
        table.add_row(
            job.task.id,
            f"[{style}]{job.status.value}[/{style}]",
            str(job.attempts),
            job.worker_id or "-",
            str(tokens),
            job.error.message if job.error and job.status != JobStatus.COMPLETED else "",
        )
    return table


def _request_abort(engine: ExecutionEngine, pending: set[asyncio.Future]) -> None:
    """Schedule engine.abort(), holding a reference until it finishes."""
    future = asyncio.ensure_future(engine.abort())
    pending.add(future)
    future.add_done_callback(pending.discard)


@main.command()
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--config", "-c", "config_path", type=click.Path(), help="Config file path")
@click.option("--provider", "-p", "provider_ids", multiple=True, help="Provider id (repeatable)")
@click.option("--concurrency", type=int, help="Override configured concurrency")
@click.option("--dry-run", is_flag=True, help="Show what would be done without executing")
def run(
    plan_file: Path,
    config_path: str | None,
    provider_ids: tuple[str, ...],
    concurrency: int | None,
    dry_run: bool,
) -> None:
    """Execute the selected tasks of PLAN_FILE."""
    config = _load_config_or_exit(config_path)
    if concurrency is not None:
        config = config.model_copy(update={"concurrency": max(1, concurrency)})
    plan = load_plan(plan_file)

    console.print(
        f"\n[bold]Plan:[/bold] {len(plan.selected_tasks)} task(s), "
        f"{len(plan.deferred_tasks)} deferred"
    )
    if dry_run:
        for planned in plan.selected_tasks:
            console.print(
                f"  - {planned.task.id}: {planned.task.title} "
                f"[dim]({planned.estimate.total_estimated_tokens} tokens)[/dim]"
            )
        console.print("[yellow]Dry run - nothing executed[/yellow]")
        return

    providers = _create_providers(default_registry(), list(provider_ids) or config.providers)
    bus = EventBus()
    bus.subscribe(None, _print_progress)
    try:
        engine = ExecutionEngine(
            providers,
            event_bus=bus,
            config=config,
            use_circuit_breaker=config.use_circuit_breaker,
        )
    except OacError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        sys.exit(1)
    engine.enqueue(plan)

    async def execute() -> RunResult:
        loop = asyncio.get_running_loop()
        pending: set[asyncio.Future] = set()
        try:
            # Ctrl-C aborts gracefully; run() still returns a result
            loop.add_signal_handler(signal.SIGINT, _request_abort, engine, pending)
        except NotImplementedError:
            # No loop signal handlers on this platform
            pass
        return await engine.run()

    result = asyncio.run(execute())
    console.print(_render_result(result))

    summary = (
        f"{len(result.completed)} completed, {len(result.failed)} failed, "
        f"{len(result.aborted)} aborted"
    )
    if result.failed or result.aborted:
        console.print(Panel(f"[red]{summary}[/red]", title="Status"))
        sys.exit(1)
    console.print(Panel(f"[green]{summary}[/green]", title="Status"))


if __name__ == "__main__":
    main()
