"""Rich rendering of execution, merge and pipeline results.

Every failed branch or task is shown with the command that fixes it:
merge, re-run, inspect or delete.
"""

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from fixpipe.merge import manual_merge_commands
from fixpipe.models import BranchStatus, ExecutionSummary
from fixpipe.notifier import format_duration
from fixpipe.pipeline import PipelineResult

STATUS_COLORS = {
    "complete": "green",
    "partial": "yellow",
    "failed": "red",
}


def remediation_for(status: BranchStatus, target_branch: str) -> str:
    """The next command an operator should run for a branch."""
    if status.merged:
        return "-"
    if status.status == "complete":
        return f"git checkout {target_branch} && git merge {status.branch}"
    if status.status == "partial":
        return f"git log {target_branch}..{status.branch}  (inspect, then merge or re-run)"
    return f"fixpipe exec  (re-run)  or  git branch -D {status.branch}"


def render_branch_status_summary(
    statuses: list[BranchStatus], target_branch: str, console: Console | None = None
) -> None:
    console = console or Console()
    if not statuses:
        return

    table = Table(title="Branches")
    table.add_column("Owner")
    table.add_column("Branch")
    table.add_column("Status")
    table.add_column("Tasks", justify="right")
    table.add_column("Merged")
    table.add_column("Next step")

    for status in statuses:
        color = STATUS_COLORS.get(status.status, "white")
        table.add_row(
            status.owner_id,
            status.branch,
            f"[{color}]{status.status}[/{color}]",
            f"{status.completed_count}/{status.total_count}",
            "[green]yes[/green]" if status.merged else "no",
            remediation_for(status, target_branch),
        )
    console.print(table)

    for status in statuses:
        if status.error and not status.merged:
            console.print(f"  [red]{status.owner_id}:[/red] {status.error}")


def render_manual_merge_instructions(
    branches: list[str], target_branch: str, console: Console | None = None
) -> None:
    console = console or Console()
    if not branches:
        return
    commands = "\n".join(manual_merge_commands(branches, target_branch))
    console.print(
        Panel(
            commands,
            title="Manual merge required",
            border_style="yellow",
        )
    )


def render_execution_summary(
    summary: ExecutionSummary, target_branch: str, console: Console | None = None
) -> None:
    console = console or Console()
    color = "green" if summary.success else "red"
    label = "SUCCESS" if summary.success else "FAILED"
    console.print(f"\n[bold {color}]Execution {label}[/bold {color}]")
    console.print(f"  Tasks completed: {summary.tasks_completed}")
    if summary.tasks_failed:
        console.print(f"  [red]Tasks failed: {summary.tasks_failed}[/red]")
    console.print(
        f"  Tokens: {summary.total_input_tokens} in / {summary.total_output_tokens} out"
    )

    render_branch_status_summary(summary.branch_statuses, target_branch, console)
    unmerged = [r.branch for r in summary.merge_results if not r.success]
    render_manual_merge_instructions(unmerged, target_branch, console)


def render_pipeline_summary(result: PipelineResult, console: Console | None = None) -> None:
    console = console or Console()
    color = "green" if result.success else "red"
    label = "SUCCESS" if result.success else "FAILED"

    console.print(f"\n[bold {color}]Pipeline {label}[/bold {color}]")
    if result.run_id:
        console.print(f"  Run: {result.run_id}")
    console.print(f"  Phases completed: {len(result.phases_completed)}")
    console.print(f"  Duration: {format_duration(result.total_duration_ms / 1000)}")
    console.print(
        f"  Tokens: {result.total_input_tokens} in / {result.total_output_tokens} out"
    )
    if result.stopped_at:
        console.print(f"  [red]Stopped at: {result.stopped_at}[/red]")

    table = Table()
    table.add_column("Phase")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Error")
    for phase_result in result.phase_results:
        table.add_row(
            phase_result.phase,
            "[green]✓[/green]" if phase_result.success else "[red]✗[/red]",
            format_duration(phase_result.duration_ms / 1000),
            phase_result.error or "",
        )
    if result.phase_results:
        console.print(table)

    if not result.success:
        console.print("\nRun [bold]fixpipe resume[/bold] to continue from the failed phase.")
