"""Parallel execution coordinator.

Runs units of work concurrently, each in its own git worktree, and hands
the completed branches to the deferred merge engine only after every unit
has finished. The two barriers are:

    finish all units -> clean up all worktrees -> merge sequentially

Merging while a worktree still has the branch checked out would fail, and
merging concurrently would corrupt the target branch's history.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any

from opentelemetry import trace

from fixpipe import telemetry
from fixpipe.agent import AgentExecutor
from fixpipe.cancellation import CancellationToken
from fixpipe.completion import analyze_unit_completion
from fixpipe.errors import AgentExecutionError
from fixpipe.merge import DeferredMergeEngine, MergeRequest
from fixpipe.models import (
    AgentResult,
    BranchStatus,
    ExecutionSummary,
    MergeBranchResult,
    UnitExecutionResult,
    UnitOfWork,
)
from fixpipe.prompts import build_unit_prompt
from fixpipe.retry import RetryConfig, execute_with_retry
from fixpipe.vcs import Err, VcsService

logger = logging.getLogger(__name__)

UnitCallback = Callable[[UnitExecutionResult], None | Awaitable[None]]
MergeCallback = Callable[[list[MergeBranchResult]], None | Awaitable[None]]
PrimeContextCallback = Callable[[UnitOfWork, Path], None | Awaitable[None]]
UnitProgressCallback = Callable[[str, str], None]


async def await_callback(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Invoke a sync or async callback and wait for it to finish."""
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


@dataclass
class ExecutionOptions:
    """Options for one coordinator run.

    Attributes:
        max_concurrent: Units of work running at the same time
        max_retries: Agent attempts per unit
        retry_delay_ms: Base delay between agent attempts
        base_branch: Branch worktrees are cut from and merged back into
        skip_merge: Leave completed branches unmerged
        fail_fast: Stop dispatching new units once a unit has a failed task
        retry_on_any_failure: Retry agent failures regardless of the message
        model_override: Model passed to every agent session
        project_context: Extra context prepended to every unit prompt
        on_unit_complete: Awaited once per unit with its result
        on_merge_complete: Awaited once with every merge outcome
        prime_context: Awaited with (unit, worktree path) before the agent runs
        on_progress: Receives (owner_id, message) agent progress events
        token: Cancellation token shared with the retry runtime
    """

    max_concurrent: int = 3
    max_retries: int = 3
    retry_delay_ms: int = 1000
    base_branch: str = "main"
    skip_merge: bool = False
    fail_fast: bool = False
    retry_on_any_failure: bool = False
    model_override: str | None = None
    project_context: str | None = None
    on_unit_complete: UnitCallback | None = None
    on_merge_complete: MergeCallback | None = None
    prime_context: PrimeContextCallback | None = None
    on_progress: UnitProgressCallback | None = None
    token: CancellationToken | None = None

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            base_delay_ms=self.retry_delay_ms,
            retry_on_any_failure=self.retry_on_any_failure,
        )


class ParallelExecutionCoordinator:
    """Fan-out execution of units of work with a deferred, sequential merge."""

    def __init__(
        self,
        vcs: VcsService,
        agent: AgentExecutor,
        merge_engine: DeferredMergeEngine,
        run_id: str,
        tracer: trace.Tracer | None = None,
    ) -> None:
        self.vcs = vcs
        self.agent = agent
        self.merge_engine = merge_engine
        self.run_id = run_id
        self.tracer = tracer or trace.get_tracer("fixpipe")

    async def run(
        self, units: list[UnitOfWork], options: ExecutionOptions
    ) -> ExecutionSummary:
        """Execute every unit, then clean up worktrees, then merge.

        Component failures never abort the batch: a unit whose worktree
        cannot be created, or whose agent session fails, is classified and
        reported like any other.
        """
        if not units:
            return ExecutionSummary()

        token = options.token
        semaphore = asyncio.Semaphore(max(1, options.max_concurrent))
        cleanup_queue: list[Path] = []
        halted = False

        logger.info(
            f"Executing {len(units)} unit(s) of work "
            f"({sum(len(u.tasks) for u in units)} task(s), "
            f"max {options.max_concurrent} concurrent)"
        )

        async def run_slot(unit: UnitOfWork) -> UnitExecutionResult:
            nonlocal halted
            async with semaphore:
                if token is not None and token.cancelled:
                    result = self._not_started(unit, "cancelled")
                elif halted:
                    result = self._not_started(
                        unit, "not started: an earlier unit failed (fail-fast)"
                    )
                else:
                    result = await self._execute_unit(unit, options, cleanup_queue)
                    if options.fail_fast and result.failed_task_ids and not halted:
                        logger.warning(
                            f"{unit.owner_id} failed; no further units will be started"
                        )
                        halted = True

                try:
                    await await_callback(options.on_unit_complete, result)
                except Exception as e:
                    logger.error(f"on_unit_complete failed for {unit.owner_id}: {e}")
                return result

        unit_results = list(await asyncio.gather(*(run_slot(u) for u in units)))

        # Barrier: no worktree may still hold a branch when merging starts
        for path in cleanup_queue:
            cleaned = await self.vcs.cleanup_worktree(path)
            if isinstance(cleaned, Err):
                logger.warning(f"Failed to clean up worktree {path}: {cleaned}")

        branch_statuses = [
            BranchStatus.from_result(result)
            for result in unit_results
            if result.branch_name is not None
        ]

        merge_requests = [
            MergeRequest(
                branch=result.branch_name,
                owner_id=result.owner_id,
                message=unit.merge_message,
            )
            for unit, result in zip(units, unit_results)
            if result.success and result.branch_name is not None
        ]

        merge_results: list[MergeBranchResult] = []
        if not merge_requests:
            logger.info("No completed branches to merge")
        elif options.skip_merge:
            logger.info(
                f"Merge skipped; {len(merge_requests)} branch(es) left for manual merge"
            )
        elif token is not None and token.cancelled:
            logger.warning(
                f"Cancelled before merging; {len(merge_requests)} branch(es) left unmerged"
            )
        else:
            merge_results = await self.merge_engine.with_auto_stash(
                partial(self._merge_and_report, merge_requests, options)
            )

        merged_by_branch = {m.branch: m for m in merge_results}
        for status in branch_statuses:
            outcome = merged_by_branch.get(status.branch)
            if outcome is None:
                continue
            status.merged = outcome.success
            if not outcome.success:
                status.error = outcome.error

        summary = ExecutionSummary(
            tasks_completed=sum(len(r.completed_task_ids) for r in unit_results),
            tasks_failed=sum(len(r.failed_task_ids) for r in unit_results),
            total_input_tokens=sum(r.input_tokens for r in unit_results),
            total_output_tokens=sum(r.output_tokens for r in unit_results),
            unit_results=unit_results,
            branch_statuses=branch_statuses,
            merge_results=merge_results,
        )
        logger.info(
            f"Execution finished: {summary.tasks_completed} completed, "
            f"{summary.tasks_failed} failed"
        )
        return summary

    async def _merge_and_report(
        self, requests: list[MergeRequest], options: ExecutionOptions
    ) -> list[MergeBranchResult]:
        results = await self.merge_engine.merge_sequentially(requests, options.base_branch)
        try:
            await await_callback(options.on_merge_complete, results)
        except Exception as e:
            logger.error(f"on_merge_complete failed: {e}")
        return results

    def _not_started(self, unit: UnitOfWork, reason: str) -> UnitExecutionResult:
        return UnitExecutionResult(
            owner_id=unit.owner_id,
            completed_task_ids=[],
            failed_task_ids=unit.task_ids,
            success=False,
            error=reason,
        )

    async def _execute_unit(
        self,
        unit: UnitOfWork,
        options: ExecutionOptions,
        cleanup_queue: list[Path],
    ) -> UnitExecutionResult:
        with self.tracer.start_as_current_span("fixpipe.unit") as span:
            span.set_attribute("unit.owner_id", unit.owner_id)
            span.set_attribute("unit.task_count", len(unit.tasks))

            worktree = await self.vcs.create_worktree(
                unit.owner_id, options.base_branch, self.run_id
            )
            if isinstance(worktree, Err):
                logger.error(f"Worktree creation failed for {unit.owner_id}: {worktree}")
                span.set_attribute("unit.status", "failed")
                return UnitExecutionResult(
                    owner_id=unit.owner_id,
                    completed_task_ids=[],
                    failed_task_ids=unit.task_ids,
                    success=False,
                    error=f"Worktree creation failed: {worktree}",
                )

            path = worktree.value.path
            branch = worktree.value.branch_name
            cleanup_queue.append(path)
            span.set_attribute("unit.branch", branch)
            logger.info(f"{unit.owner_id}: {len(unit.tasks)} task(s) on {branch}")

            usage = {"input": 0, "output": 0}
            agent_error: str | None = None
            try:
                await await_callback(options.prime_context, unit, path)
                prompt = build_unit_prompt(unit, options.project_context)
                progress = (
                    partial(options.on_progress, unit.owner_id)
                    if options.on_progress is not None
                    else None
                )

                async def attempt() -> AgentResult:
                    result = await self.agent.execute(
                        prompt,
                        path,
                        model_override=options.model_override,
                        on_progress=progress,
                    )
                    usage["input"] += result.input_tokens
                    usage["output"] += result.output_tokens
                    if not result.success:
                        raise AgentExecutionError(result.error or "Agent session failed")
                    return result

                retry_result = await execute_with_retry(
                    attempt,
                    options.retry_config(),
                    options.token,
                    on_retry=lambda _: telemetry.record_retry("agent"),
                    label=f"agent {unit.owner_id}",
                )
                if not retry_result.success:
                    agent_error = str(retry_result.error)
            except Exception as e:
                agent_error = str(e)

            if agent_error:
                logger.warning(f"{unit.owner_id}: agent session failed: {agent_error}")

            # Classify from commit history whatever happened above
            analysis = await analyze_unit_completion(
                self.vcs, unit, path, options.base_branch
            )
            success = not analysis.failed_task_ids
            error = None
            if not success:
                error = agent_error or (
                    f"{len(analysis.failed_task_ids)} task(s) without a matching commit"
                )

            result = UnitExecutionResult(
                owner_id=unit.owner_id,
                completed_task_ids=analysis.completed_task_ids,
                failed_task_ids=analysis.failed_task_ids,
                input_tokens=usage["input"],
                output_tokens=usage["output"],
                success=success,
                branch_name=branch,
                error=error,
            )

            status = BranchStatus.classify(
                len(result.completed_task_ids),
                len(result.failed_task_ids),
                len(unit.tasks),
            )
            span.set_attribute("unit.status", status)
            span.set_attribute("unit.tokens", result.input_tokens + result.output_tokens)
            telemetry.record_unit(
                status,
                len(result.completed_task_ids),
                len(result.failed_task_ids),
                result.input_tokens,
                result.output_tokens,
            )
            logger.info(
                f"{unit.owner_id}: {status} "
                f"({len(result.completed_task_ids)}/{len(unit.tasks)} task(s))"
            )
            return result
