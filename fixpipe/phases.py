"""Phase handlers for the pipeline orchestrator.

AgentPhase runs one agent session in the repository for the analysis
phases. ExecPhase drives the parallel execution coordinator and persists
every status transition through the state store.
"""

import json
import logging
from dataclasses import replace
from pathlib import Path

from opentelemetry import trace

from fixpipe.agent import AgentExecutor
from fixpipe.coordinator import ExecutionOptions, ParallelExecutionCoordinator
from fixpipe.errors import AgentExecutionError, StateError
from fixpipe.grouping import is_blocked
from fixpipe.merge import DeferredMergeEngine
from fixpipe.models import (
    RUNNABLE_TASK_STATUSES,
    AgentResult,
    ExecutionSummary,
    MergeBranchResult,
    Task,
    UnitExecutionResult,
    UnitOfWork,
)
from fixpipe.notifier import Notifier
from fixpipe.pipeline import PhaseContext, PhaseResult
from fixpipe.prompts import build_phase_prompt
from fixpipe.retry import RetryConfig, execute_with_retry
from fixpipe.scheduler import run_by_group, run_by_issue
from fixpipe.vcs import VcsService

logger = logging.getLogger(__name__)

CONTEXT_DIR_NAME = ".fixpipe-context"

# Statuses a new exec pass turns back into pending
REQUEUE_TASK_STATUSES = frozenset({"failed", "skipped", "running"})


class AgentPhase:
    """Single-session phase: scan, validate, plan, consolidate or verify.

    The agent reads and writes the JSON state files itself; this handler
    runs the session and updates the run's counters and phase afterwards.
    A prompt template at <state_dir>/prompts/<phase>.md overrides the
    built-in instructions.
    """

    def __init__(
        self,
        phase: str,
        agent: AgentExecutor,
        repo_dir: Path,
        retry_config: RetryConfig | None = None,
        model_override: str | None = None,
    ) -> None:
        self.phase = phase
        self.agent = agent
        self.repo_dir = Path(repo_dir)
        self.retry_config = retry_config or RetryConfig()
        self.model_override = model_override

    def _template(self, ctx: PhaseContext) -> str | None:
        path = ctx.store.state_dir / "prompts" / f"{self.phase}.md"
        return path.read_text() if path.exists() else None

    async def __call__(self, ctx: PhaseContext) -> PhaseResult:
        if self.phase == "scan":
            ctx.store.initialize()
            run = ctx.store.create_run()
        else:
            run = ctx.load_run()
            if run is None:
                return PhaseResult(
                    phase=self.phase,
                    success=False,
                    error="No active run. Run the scan phase first.",
                )

        prompt = build_phase_prompt(self.phase, run, self._template(ctx))
        usage = {"input": 0, "output": 0}

        async def attempt() -> AgentResult:
            result = await self.agent.execute(
                prompt, self.repo_dir, model_override=self.model_override
            )
            usage["input"] += result.input_tokens
            usage["output"] += result.output_tokens
            if not result.success:
                raise AgentExecutionError(result.error or f"{self.phase} session failed")
            return result

        retry_result = await execute_with_retry(
            attempt, self.retry_config, ctx.token, label=self.phase
        )

        if not retry_result.success:
            return PhaseResult(
                phase=self.phase,
                success=False,
                input_tokens=usage["input"],
                output_tokens=usage["output"],
                error=str(retry_result.error),
                run_id=run.id,
                next_phase="failed" if self.phase == "scan" else None,
            )

        next_phase, details, error = self._advance(ctx, run.id)
        return PhaseResult(
            phase=self.phase,
            success=error is None,
            input_tokens=usage["input"],
            output_tokens=usage["output"],
            error=error,
            run_id=run.id,
            next_phase=next_phase,
            details=details,
        )

    def _advance(self, ctx: PhaseContext, run_id: str) -> tuple[str | None, dict, str | None]:
        """Update run counters from the state files; returns (next_phase, details, error)."""
        run = ctx.store.load_run(run_id)
        if run is None:
            raise StateError(f"Run {run_id} disappeared during {self.phase}")
        issues = ctx.store.load_issues()
        tasks = ctx.store.load_tasks()
        next_phase: str | None = None
        error: str | None = None

        if self.phase == "scan":
            run.issues_found = len(issues)
            next_phase = "validate" if issues else "completed"
            details = {"issues_found": len(issues)}
        elif self.phase == "validate":
            confirmed = [i for i in issues if i.status == "confirmed"]
            run.issues_validated = len(confirmed)
            next_phase = "plan" if confirmed else "completed"
            details = {"issues_confirmed": len(confirmed)}
        elif self.phase in ("plan", "consolidate"):
            run.tasks_total = len(tasks)
            details = {"tasks": len(tasks)}
        else:
            unfinished = [t for t in tasks if t.status not in ("done", "skipped")]
            if unfinished:
                error = f"{len(unfinished)} task(s) did not complete"
            # Unfinished work goes back to exec, which re-queues it
            next_phase = "exec" if unfinished else "completed"
            details = {"tasks_failed": len(unfinished)}

        ctx.store.save_run(run)
        return next_phase, details, error


class ExecPhase:
    """Executes runnable tasks through the coordinator and persists outcomes.

    Failed, skipped and stale running tasks from an earlier pass are put back
    to pending first. Runnable tasks (pending and merge_error) are marked
    running, executed by issue (default) or by parallel group, and flipped
    to done/failed as each unit completes. Tasks whose branch fails to merge
    become merge_error so the next exec re-queues them. The run stays at
    exec until every task is done or skipped.
    """

    def __init__(
        self,
        vcs: VcsService,
        agent: AgentExecutor,
        merge_engine: DeferredMergeEngine,
        options: ExecutionOptions,
        by_group: bool = False,
        notifier: Notifier | None = None,
        tracer: trace.Tracer | None = None,
    ) -> None:
        self.vcs = vcs
        self.agent = agent
        self.merge_engine = merge_engine
        self.options = options
        self.by_group = by_group
        self.notifier = notifier or Notifier()
        self.tracer = tracer

    async def __call__(self, ctx: PhaseContext) -> PhaseResult:
        store = ctx.store
        run_id = ctx.run_id or "adhoc"
        tasks = store.load_tasks()
        issues = store.load_issues()

        requeued = [t for t in tasks if t.status in REQUEUE_TASK_STATUSES]
        if requeued:
            logger.info(f"Re-queueing {len(requeued)} failed, skipped or stale task(s)")
            for task in requeued:
                task.status = "pending"

        selected_ids = {t.id for t in tasks if t.status in RUNNABLE_TASK_STATUSES}

        if not selected_ids:
            logger.info("No runnable tasks to execute")
            return self._finish(ctx, ExecutionSummary(), [])

        for task in tasks:
            if task.id in selected_ids:
                task.status = "running"
                task.error = None
        store.save_tasks(tasks)

        # Readiness is re-derived by the schedulers from the pending view
        schedule_view = [
            replace(t, status="pending") if t.id in selected_ids else t for t in tasks
        ]

        def on_unit_complete(result: UnitExecutionResult) -> None:
            for task_id in result.completed_task_ids:
                store.update_task(task_id, status="done", branch=result.branch_name, error=None)
            for task_id in result.failed_task_ids:
                store.update_task(
                    task_id, status="failed", branch=result.branch_name, error=result.error
                )

        merge_results: list[MergeBranchResult] = []

        async def on_merge_complete(results: list[MergeBranchResult]) -> None:
            merge_results.extend(results)
            failed_branches = {r.branch: r.error for r in results if not r.success}
            if failed_branches:
                for task in store.load_tasks():
                    if task.status == "done" and task.branch in failed_branches:
                        store.update_task(
                            task.id,
                            status="merge_error",
                            error=f"Merge failed: {failed_branches[task.branch]}",
                        )
            await self.notifier.merge_failures(results, self.options.base_branch)

        options = replace(
            self.options,
            on_unit_complete=on_unit_complete,
            on_merge_complete=on_merge_complete,
            prime_context=self._prime_context,
            token=ctx.token or self.options.token,
        )
        coordinator = ParallelExecutionCoordinator(
            self.vcs, self.agent, self.merge_engine, run_id, self.tracer
        )

        if self.by_group:
            schedule = await run_by_group(coordinator, schedule_view, issues, options)
            for task_id in schedule.skipped_task_ids:
                store.update_task(
                    task_id,
                    status="skipped",
                    error="Blocked by a failed or skipped dependency",
                )
            summary = ExecutionSummary(
                tasks_completed=schedule.tasks_completed,
                tasks_failed=schedule.tasks_failed,
                total_input_tokens=schedule.total_input_tokens,
                total_output_tokens=schedule.total_output_tokens,
                unit_results=[u for s in schedule.summaries for u in s.unit_results],
                branch_statuses=[b for s in schedule.summaries for b in s.branch_statuses],
                merge_results=[m for s in schedule.summaries for m in s.merge_results],
            )
        else:
            summary = await run_by_issue(coordinator, schedule_view, issues, options)

        # Tasks excluded from every unit go back to pending, or skipped when
        # a dependency failed during this pass
        executed = {
            task_id
            for unit in summary.unit_results
            for task_id in unit.completed_task_ids + unit.failed_task_ids
        }
        latest = store.load_tasks()
        latest_by_id = {t.id: t for t in latest}
        for task in latest:
            if task.status != "running" or task.id in executed:
                continue
            if is_blocked(task, latest_by_id):
                store.update_task(
                    task.id, status="skipped", error="Blocked by a failed or skipped dependency"
                )
            else:
                store.update_task(task.id, status="pending")

        return self._finish(ctx, summary, merge_results)

    def _prime_context(self, unit: UnitOfWork, worktree_path: Path) -> None:
        """Write the unit's issue and tasks into the worktree for the agent."""
        context_dir = worktree_path / CONTEXT_DIR_NAME
        context_dir.mkdir(parents=True, exist_ok=True)
        (context_dir / ".gitignore").write_text("*\n")
        payload = {
            "owner_id": unit.owner_id,
            "issue": unit.issue.to_dict() if unit.issue is not None else None,
            "tasks": [task.to_dict() for task in unit.tasks],
        }
        with open(context_dir / "unit.json", "w") as f:
            json.dump(payload, f, indent=2)

    def _finish(
        self,
        ctx: PhaseContext,
        summary: ExecutionSummary,
        merge_results: list[MergeBranchResult],
    ) -> PhaseResult:
        tasks: list[Task] = ctx.store.load_tasks()
        completed = sum(1 for t in tasks if t.status == "done")
        failed = sum(1 for t in tasks if t.status == "failed")
        unfinished = sum(
            1 for t in tasks if t.status in RUNNABLE_TASK_STATUSES or t.status == "running"
        )
        all_done = all(t.status in ("done", "skipped") for t in tasks)
        # Anything short of all done stays at exec; the next exec re-queues it
        next_phase = "verify" if all_done else "exec"

        run = ctx.load_run()
        if run is not None:
            run.tasks_total = len(tasks)
            run.tasks_completed = completed
            run.tasks_failed = failed
            ctx.store.save_run(run)

        merge_failures = [m for m in merge_results if not m.success]
        error = None
        if summary.tasks_failed:
            error = f"{summary.tasks_failed} task(s) failed"
        elif merge_failures:
            error = f"{len(merge_failures)} branch(es) failed to merge"
        elif unfinished:
            error = f"{unfinished} task(s) still pending"

        return PhaseResult(
            phase="exec",
            success=error is None,
            input_tokens=summary.total_input_tokens,
            output_tokens=summary.total_output_tokens,
            error=error,
            next_phase=next_phase,
            details={
                "tasks_completed": summary.tasks_completed,
                "tasks_failed": summary.tasks_failed,
                "branches_merged": sum(1 for m in merge_results if m.success),
                "summary": summary,
            },
        )
