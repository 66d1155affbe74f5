"""CLI for fixpipe.

Runs the pipeline, single phases and status queries for the repository in
the current directory.
"""

import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from fixpipe.agent import ClaudeCodeExecutor
from fixpipe.cancellation import CancellationToken
from fixpipe.config import PipelineConfig
from fixpipe.conflicts import AgentConflictResolver
from fixpipe.coordinator import ExecutionOptions
from fixpipe.errors import FixpipeError
from fixpipe.git import GitVcsService
from fixpipe.lock import RunLock
from fixpipe.merge import DeferredMergeEngine
from fixpipe.notifier import Notifier
from fixpipe.phases import AgentPhase, ExecPhase
from fixpipe.pipeline import (
    PHASE_ORDER,
    PhaseContext,
    PipelineOptions,
    PipelineOrchestrator,
    PipelineResult,
)
from fixpipe.reporting import render_execution_summary, render_pipeline_summary
from fixpipe.state import StateStore
from fixpipe.telemetry import create_metrics, setup_telemetry

console = Console()
logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _build_orchestrator(
    config: PipelineConfig,
    repo_dir: Path,
    token: CancellationToken,
    by_group: bool = False,
) -> PipelineOrchestrator:
    """Wire git, the agent, the merge engine and phase handlers together."""
    tracer, meter = setup_telemetry(config)
    create_metrics(meter)

    store = StateStore(repo_dir / config.state_dir)
    store.initialize()
    vcs = GitVcsService(repo_dir, store.worktree_root)
    agent = ClaudeCodeExecutor(
        command=config.agent_command,
        max_turns=config.max_turns,
        timeout_seconds=config.agent_timeout_seconds,
        token=token,
    )
    resolver = AgentConflictResolver(
        agent,
        vcs,
        repo_dir,
        retry_config=config.retry_config(),
        model_override=config.model,
        token=token,
    )
    merge_engine = DeferredMergeEngine(
        vcs, resolver, max_retries=config.merge_max_retries, tracer=tracer
    )
    notifier = Notifier(config.webhook_url)

    def on_progress(owner_id: str, message: str) -> None:
        console.print(f"  [dim]{owner_id}[/dim] {message}")

    options = ExecutionOptions(
        max_concurrent=config.max_concurrent,
        max_retries=config.max_retries,
        retry_delay_ms=config.retry_delay_ms,
        base_branch=config.base_branch,
        skip_merge=config.skip_merge,
        retry_on_any_failure=config.retry_on_any_failure,
        model_override=config.model,
        on_progress=on_progress,
        token=token,
    )

    handlers = {
        phase: AgentPhase(
            phase,
            agent,
            repo_dir,
            retry_config=config.retry_config(),
            model_override=config.model,
        )
        for phase in PHASE_ORDER
        if phase != "exec"
    }
    handlers["exec"] = ExecPhase(
        vcs,
        agent,
        merge_engine,
        options,
        by_group=by_group,
        notifier=notifier,
        tracer=tracer,
    )
    return PipelineOrchestrator(store, handlers, tracer=tracer, notifier=notifier, token=token)


@contextlib.contextmanager
def _cancel_on_signals(token: CancellationToken):
    """Translate SIGINT/SIGTERM into token.cancel() for the running loop."""
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, token.cancel, f"received {sig.name}")
            installed.append(sig)
    try:
        yield
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def _run_pipeline(
    config: PipelineConfig,
    options: PipelineOptions,
    resume: bool = False,
    by_group: bool = False,
) -> PipelineResult:
    token = CancellationToken()
    repo_dir = Path.cwd()
    orchestrator = _build_orchestrator(config, repo_dir, token, by_group=by_group)

    with RunLock(orchestrator.store.state_dir), _cancel_on_signals(token):
        try:
            if resume:
                return await orchestrator.resume(options)
            return await orchestrator.run(options)
        finally:
            await token.drain()


async def _run_exec(config: PipelineConfig, by_group: bool):
    token = CancellationToken()
    repo_dir = Path.cwd()
    orchestrator = _build_orchestrator(config, repo_dir, token, by_group=by_group)
    store = orchestrator.store

    with RunLock(store.state_dir), _cancel_on_signals(token):
        try:
            return await orchestrator.handlers["exec"](
                PhaseContext(
                    phase="exec", run_id=store.current_run_id(), store=store, token=token
                )
            )
        finally:
            await token.drain()


@click.group()
@click.version_option(package_name="fixpipe")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def cli(verbose: bool) -> None:
    """fixpipe - autonomous multi-agent code fixing pipeline."""
    _configure_logging(verbose)


@cli.command()
@click.option("--from", "start_phase", type=click.Choice(PHASE_ORDER), default="scan")
@click.option("--to", "end_phase", type=click.Choice(PHASE_ORDER), default="verify")
@click.option("--no-fail-fast", is_flag=True, help="Continue after a failed phase")
@click.option("--force", is_flag=True, help="Re-run phases the run already completed")
@click.option("--by-group", is_flag=True, help="Execute tasks per parallel group")
@click.option("--model", default=None, help="Model override for agent sessions")
def run(
    start_phase: str,
    end_phase: str,
    no_fail_fast: bool,
    force: bool,
    by_group: bool,
    model: str | None,
) -> None:
    """Run the pipeline from one phase to another."""
    config = PipelineConfig.from_env()
    if model:
        config.model = model
    options = PipelineOptions(
        start_phase=start_phase,
        end_phase=end_phase,
        fail_fast=not no_fail_fast,
        # A fresh scan starts a new run, so earlier progress is irrelevant
        skip_completed=start_phase != "scan",
        force=force,
    )
    result = _invoke(_run_pipeline(config, options, by_group=by_group))
    _exit_with(result, config.base_branch)


@cli.command()
@click.option("--no-fail-fast", is_flag=True, help="Continue after a failed phase")
@click.option("--by-group", is_flag=True, help="Execute tasks per parallel group")
def resume(no_fail_fast: bool, by_group: bool) -> None:
    """Resume the current run from its recorded phase."""
    config = PipelineConfig.from_env()
    options = PipelineOptions(fail_fast=not no_fail_fast)
    result = _invoke(_run_pipeline(config, options, resume=True, by_group=by_group))
    _exit_with(result, config.base_branch)


@cli.command("exec")
@click.option("--by-group", is_flag=True, help="Execute tasks per parallel group")
@click.option("--skip-merge", is_flag=True, help="Leave completed branches unmerged")
@click.option("--max-concurrent", type=int, default=None, help="Concurrent units of work")
def exec_command(by_group: bool, skip_merge: bool, max_concurrent: int | None) -> None:
    """Execute unfinished tasks without running the other phases."""
    config = PipelineConfig.from_env()
    if skip_merge:
        config.skip_merge = True
    if max_concurrent is not None:
        config.max_concurrent = max_concurrent

    phase_result = _invoke(_run_exec(config, by_group))
    if phase_result is None:
        sys.exit(1)
    summary = phase_result.details.get("summary")
    if summary is not None:
        render_execution_summary(summary, config.base_branch, console)
    if phase_result.error:
        console.print(f"[red]Error:[/red] {phase_result.error}")
    sys.exit(0 if phase_result.success else 1)


@cli.command()
def status() -> None:
    """Show the current run and task counts."""
    config = PipelineConfig.from_env()
    store = StateStore(Path.cwd() / config.state_dir)
    run = store.current_run()
    if run is None:
        console.print("[yellow]No current run[/yellow]")
        return

    tasks = store.load_tasks()
    counts: dict[str, int] = {}
    for task in tasks:
        counts[task.status] = counts.get(task.status, 0) + 1

    console.print(f"[bold]Run:[/bold] {run.id}")
    console.print(f"  Phase: {run.phase}")
    console.print(f"  Issues: {run.issues_found} found, {run.issues_validated} validated")
    console.print(f"  Tasks: {len(tasks)}")
    for name in ("pending", "running", "done", "failed", "skipped", "merge_error"):
        if counts.get(name):
            console.print(f"    {name}: {counts[name]}")


@cli.command()
@click.option("--limit", "-n", default=10, help="Number of runs to show")
def runs(limit: int) -> None:
    """List pipeline runs, newest first."""
    config = PipelineConfig.from_env()
    store = StateStore(Path.cwd() / config.state_dir)
    all_runs = store.list_runs()[:limit]
    if not all_runs:
        console.print("[yellow]No runs found[/yellow]")
        return

    current = store.current_run_id()
    table = Table(title="Runs")
    table.add_column("Run")
    table.add_column("Created")
    table.add_column("Phase")
    table.add_column("Issues")
    table.add_column("Tasks")
    for run in all_runs:
        marker = " *" if run.id == current else ""
        table.add_row(
            f"{run.id}{marker}",
            run.created_at.strftime("%Y-%m-%d %H:%M"),
            run.phase,
            str(run.issues_found),
            f"{run.tasks_completed}/{run.tasks_total}",
        )
    console.print(table)


def _invoke(coro):
    """Run a coroutine, turning user-facing errors into messages."""
    try:
        return asyncio.run(coro)
    except FixpipeError as e:
        console.print(f"[red]Error:[/red] {e}")
    return None


def _exit_with(result: PipelineResult | None, target_branch: str) -> None:
    if result is None:
        sys.exit(1)
    for phase_result in result.phase_results:
        summary = phase_result.details.get("summary")
        if summary is not None:
            render_execution_summary(summary, target_branch, console)
    render_pipeline_summary(result, console)
    sys.exit(0 if result.success else 1)


def main() -> None:
    """Main entry point for the fixpipe CLI."""
    cli()


if __name__ == "__main__":
    main()
