"""Task and issue grouping.

Partitions a flat task list by owning issue and by parallel group, and
answers readiness questions for the schedulers. All functions are pure:
they read task records and never change their status.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from fixpipe.models import (
    RUNNABLE_TASK_STATUSES,
    TERMINAL_TASK_STATUSES,
    UNASSIGNED_OWNER,
    UNKNOWN_SEVERITY_RANK,
    Issue,
    OwnerGroup,
    Task,
)

logger = logging.getLogger(__name__)


@dataclass
class ParallelGroup:
    """Tasks sharing one parallel_group tier."""

    group: int
    tasks: list[Task]


def order_unit_tasks(tasks: Iterable[Task]) -> list[Task]:
    """Canonical task order within a unit.

    Tasks are sorted by parallel group, then id, and then moved after any
    dependency that is part of the same list. Members of a dependency
    cycle keep their sorted position.

    The prompt numbers tasks in this order and the completion analyzer
    matches "Task <n>" commits against it, so both must use this function.
    """
    remaining = sorted(tasks, key=lambda t: (t.parallel_group, t.id))
    member_ids = {task.id for task in remaining}
    placed: set[str] = set()
    ordered: list[Task] = []

    while remaining:
        for task in remaining:
            if all(dep in placed or dep not in member_ids for dep in task.depends_on):
                break
        else:
            task = remaining[0]
        remaining.remove(task)
        placed.add(task.id)
        ordered.append(task)
    return ordered


def _owner_sort_key(group: OwnerGroup) -> tuple[int, str]:
    rank = group.issue.severity_rank if group.issue is not None else UNKNOWN_SEVERITY_RANK
    return rank, group.owner_id


def group_by_owner(tasks: Iterable[Task], issues: Iterable[Issue]) -> list[OwnerGroup]:
    """Group tasks by owning issue.

    Tasks without an issue_id go to the UNASSIGNED bucket. Tasks whose
    issue is not among `issues` are dropped with a warning; they are simply
    excluded from this run.

    Returns:
        Owner groups sorted by severity (critical first), then owner id
    """
    issues_by_id = {issue.id: issue for issue in issues}
    buckets: dict[str, list[Task]] = {}

    for task in tasks:
        owner_id = task.issue_id or UNASSIGNED_OWNER
        if owner_id != UNASSIGNED_OWNER and owner_id not in issues_by_id:
            logger.warning(
                f"Task {task.id} references unknown issue {owner_id}; skipping it"
            )
            continue
        buckets.setdefault(owner_id, []).append(task)

    groups = [
        OwnerGroup(
            owner_id=owner_id,
            tasks=order_unit_tasks(owner_tasks),
            issue=issues_by_id.get(owner_id),
        )
        for owner_id, owner_tasks in buckets.items()
    ]
    return sorted(groups, key=_owner_sort_key)


def extract_parallel_groups(tasks: Iterable[Task]) -> list[ParallelGroup]:
    """Bucket tasks by parallel_group, in ascending group order."""
    buckets: dict[int, list[Task]] = {}
    for task in tasks:
        buckets.setdefault(task.parallel_group, []).append(task)
    return [ParallelGroup(group=g, tasks=buckets[g]) for g in sorted(buckets)]


def is_group_complete(group: ParallelGroup) -> bool:
    """A group is complete when every task is done, failed, or skipped."""
    return all(task.status in TERMINAL_TASK_STATUSES for task in group.tasks)


def are_previous_groups_complete(groups: list[ParallelGroup], index: int) -> bool:
    return all(is_group_complete(group) for group in groups[:index])


def next_group_to_execute(groups: list[ParallelGroup]) -> ParallelGroup | None:
    for group in groups:
        if not is_group_complete(group):
            return group
    return None


def get_runnable_tasks(tasks: list[Task]) -> list[Task]:
    """Return the tasks one issue-scoped pass can execute, in canonical order.

    A task qualifies when it is pending or merge_error and each dependency
    is either done or another qualifying task of the same issue. Same-issue
    dependencies run earlier in the same agent session. merge_error counts
    as runnable because the agent work succeeded but the branch failed to
    merge. A dependency that does not exist is never satisfied.
    """
    tasks_by_id = {t.id: t for t in tasks}
    candidates = {
        t.id: t
        for t in tasks
        if t.status in RUNNABLE_TASK_STATUSES and not is_blocked(t, tasks_by_id)
    }

    changed = True
    while changed:
        changed = False
        for task in list(candidates.values()):
            for dep_id in task.depends_on:
                dep = tasks_by_id[dep_id]
                if dep.status == "done":
                    continue
                if dep_id in candidates and dep.issue_id == task.issue_id:
                    continue
                del candidates[task.id]
                changed = True
                break

    return order_unit_tasks(t for t in tasks if t.id in candidates)


def get_ready_tasks_from_group(group: ParallelGroup, done_ids: set[str]) -> list[Task]:
    """Runnable tasks of one group whose dependencies are all in done_ids."""
    return [
        task
        for task in group.tasks
        if task.status in RUNNABLE_TASK_STATUSES
        and all(dep in done_ids for dep in task.depends_on)
    ]


def is_blocked(task: Task, tasks_by_id: dict[str, Task]) -> bool:
    """True when a dependency ended failed or skipped, so the task can never run."""
    for dep_id in task.depends_on:
        dep = tasks_by_id.get(dep_id)
        if dep is None or dep.status in ("failed", "skipped"):
            return True
    return False
