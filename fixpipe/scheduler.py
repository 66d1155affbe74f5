"""Schedulers that turn runnable tasks into coordinator runs.

run_by_issue() executes one unit per issue, in waves when issues depend on
each other.
run_by_group() walks parallel groups in ascending order, one unit per task,
merging after every group so later groups build on merged work.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace

from fixpipe.coordinator import (
    ExecutionOptions,
    ParallelExecutionCoordinator,
    await_callback,
)
from fixpipe.grouping import (
    are_previous_groups_complete,
    extract_parallel_groups,
    get_ready_tasks_from_group,
    get_runnable_tasks,
    group_by_owner,
    is_blocked,
    order_unit_tasks,
)
from fixpipe.models import (
    RUNNABLE_TASK_STATUSES,
    ExecutionSummary,
    Issue,
    OwnerGroup,
    Task,
)

logger = logging.getLogger(__name__)

GroupCallback = Callable[[int, ExecutionSummary], None | Awaitable[None]]


@dataclass
class GroupScheduleResult:
    """Outcome of a group-ordered schedule.

    `statuses` is the scheduler's local view of every task after the pass;
    skipped tasks are those whose dependencies ended failed or skipped.
    """

    groups_executed: list[int] = field(default_factory=list)
    summaries: list[ExecutionSummary] = field(default_factory=list)
    skipped_task_ids: list[str] = field(default_factory=list)
    statuses: dict[str, str] = field(default_factory=dict)
    stopped_at_group: int | None = None

    @property
    def tasks_completed(self) -> int:
        return sum(s.tasks_completed for s in self.summaries)

    @property
    def tasks_failed(self) -> int:
        return sum(s.tasks_failed for s in self.summaries)

    @property
    def total_input_tokens(self) -> int:
        return sum(s.total_input_tokens for s in self.summaries)

    @property
    def total_output_tokens(self) -> int:
        return sum(s.total_output_tokens for s in self.summaries)

    @property
    def success(self) -> bool:
        return (
            self.stopped_at_group is None
            and not self.skipped_task_ids
            and all(s.success for s in self.summaries)
        )


async def run_by_issue(
    coordinator: ParallelExecutionCoordinator,
    tasks: list[Task],
    issues: list[Issue],
    options: ExecutionOptions,
) -> ExecutionSummary:
    """Execute every runnable task, one unit of work per owning issue.

    A unit carries all of its issue's runnable tasks, including those that
    depend on earlier tasks of the same issue, in dependency order. Tasks
    waiting on another issue run in a later wave, after the first wave's
    branches are merged. Each task is attempted at most once per call.
    """
    local = {task.id: replace(task) for task in tasks}
    attempted: set[str] = set()
    summary = ExecutionSummary()
    token = options.token
    wave = 0

    while token is None or not token.cancelled:
        runnable = [
            t for t in get_runnable_tasks(list(local.values())) if t.id not in attempted
        ]
        attempted.update(t.id for t in runnable)
        units = group_by_owner(runnable, issues)
        if not units:
            break

        wave += 1
        logger.info(
            f"Wave {wave}: executing {len(runnable)} task(s) across {len(units)} issue(s)"
        )
        for task in runnable:
            task.status = "running"
        wave_summary = await coordinator.run(units, options)
        _apply_summary(local, wave_summary)
        summary = _combine(summary, wave_summary)

    if wave == 0:
        logger.info("No runnable tasks to execute")
    return summary


async def run_by_group(
    coordinator: ParallelExecutionCoordinator,
    tasks: list[Task],
    issues: list[Issue],
    options: ExecutionOptions,
    on_group_complete: GroupCallback | None = None,
) -> GroupScheduleResult:
    """Execute tasks group by group, one unit of work per task.

    A group starts only when every earlier group is complete in the local
    status view. Within a group, tasks whose dependencies are satisfied run
    in waves; tasks that can never become ready are skipped.
    """
    local = {task.id: replace(task) for task in tasks}
    issues_by_id = {issue.id: issue for issue in issues}
    groups = extract_parallel_groups(local.values())
    result = GroupScheduleResult()
    token = options.token

    for index, group in enumerate(groups):
        if token is not None and token.cancelled:
            logger.warning(f"Cancelled before group {group.group}")
            result.stopped_at_group = group.group
            break

        if not are_previous_groups_complete(groups, index):
            logger.warning(
                f"Group {group.group} cannot start: earlier groups have unfinished tasks"
            )
            result.stopped_at_group = group.group
            break

        group_summary = ExecutionSummary()
        while True:
            done_ids = {t.id for t in local.values() if t.status == "done"}
            ready = order_unit_tasks(get_ready_tasks_from_group(group, done_ids))
            if not ready or (token is not None and token.cancelled):
                break

            logger.info(f"Group {group.group}: executing {len(ready)} task(s)")
            for task in ready:
                task.status = "running"

            units = [
                OwnerGroup(
                    owner_id=task.id,
                    tasks=[task],
                    issue=issues_by_id.get(task.issue_id) if task.issue_id else None,
                )
                for task in ready
            ]
            summary = await coordinator.run(units, options)
            _apply_summary(local, summary)
            group_summary = _combine(group_summary, summary)

        # Whatever is still runnable here can never become ready in this pass
        for task in group.tasks:
            if task.status in RUNNABLE_TASK_STATUSES:
                if token is not None and token.cancelled:
                    continue
                reason = (
                    "Blocked by a failed or skipped dependency"
                    if is_blocked(task, local)
                    else "Dependencies not satisfied within its group"
                )
                logger.warning(f"Skipping {task.id}: {reason}")
                task.status = "skipped"
                task.error = reason
                result.skipped_task_ids.append(task.id)

        result.groups_executed.append(group.group)
        result.summaries.append(group_summary)
        await await_callback(on_group_complete, group.group, group_summary)

    result.statuses = {task_id: task.status for task_id, task in local.items()}
    return result


def _apply_summary(local: dict[str, Task], summary: ExecutionSummary) -> None:
    for unit in summary.unit_results:
        for task_id in unit.completed_task_ids:
            local[task_id].status = "done"
            local[task_id].branch = unit.branch_name
        for task_id in unit.failed_task_ids:
            local[task_id].status = "failed"
            local[task_id].error = unit.error

    # An unmerged branch cannot satisfy dependents for the rest of this pass
    failed_branches = {m.branch: m.error for m in summary.merge_results if not m.success}
    for task in local.values():
        if task.status == "done" and task.branch in failed_branches:
            task.status = "failed"
            task.error = f"Merge failed: {failed_branches[task.branch]}"


def _combine(left: ExecutionSummary, right: ExecutionSummary) -> ExecutionSummary:
    return ExecutionSummary(
        tasks_completed=left.tasks_completed + right.tasks_completed,
        tasks_failed=left.tasks_failed + right.tasks_failed,
        total_input_tokens=left.total_input_tokens + right.total_input_tokens,
        total_output_tokens=left.total_output_tokens + right.total_output_tokens,
        unit_results=left.unit_results + right.unit_results,
        branch_statuses=left.branch_statuses + right.branch_statuses,
        merge_results=left.merge_results + right.merge_results,
    )
