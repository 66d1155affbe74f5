"""Completion analysis from commit history.

Classifies each task of a unit as completed or failed by matching the
commits on the unit's branch against the "[<owner>] Task <n>: <title>"
convention. This makes partial progress visible even when the agent
session errored out mid-way.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from fixpipe.models import OwnerGroup, Task
from fixpipe.vcs import CommitEntry, Err, VcsService

logger = logging.getLogger(__name__)


@dataclass
class CompletionAnalysis:
    """Total, disjoint classification of a unit's tasks."""

    completed_task_ids: list[str]
    failed_task_ids: list[str]


def commit_subject(owner_id: str, number: int, title: str) -> str:
    """The commit subject an agent must use for task `number` of a unit."""
    return f"[{owner_id}] Task {number}: {title}"


def match_tasks_to_commits(
    owner_id: str, tasks: list[Task], commits: list[CommitEntry]
) -> CompletionAnalysis:
    """Match tasks to commits by message.

    Task n (1-based position in `tasks`) is completed when a commit message
    contains "[<owner_id>] Task <n>:", or contains the owner tag together
    with the task title (case-insensitive).
    """
    owner_tag = f"[{owner_id}]"
    completed: list[str] = []
    failed: list[str] = []

    for number, task in enumerate(tasks, start=1):
        exact = f"{owner_tag} Task {number}:"
        title = task.title.lower()
        matched = any(
            exact in commit.message
            or (owner_tag in commit.message and title and title in commit.message.lower())
            for commit in commits
        )
        if matched:
            completed.append(task.id)
        else:
            failed.append(task.id)

    return CompletionAnalysis(completed_task_ids=completed, failed_task_ids=failed)


def _all_failed(unit: OwnerGroup) -> CompletionAnalysis:
    return CompletionAnalysis(completed_task_ids=[], failed_task_ids=unit.task_ids)


async def analyze_unit_completion(
    vcs: VcsService, unit: OwnerGroup, worktree_dir: Path, base_branch: str
) -> CompletionAnalysis:
    """Classify a unit's tasks from the commits in its worktree.

    Never raises: if history cannot be read, every task is failed so the
    caller always receives a total classification.
    """
    try:
        result = await vcs.commits_since(worktree_dir, base_branch)
        if isinstance(result, Err):
            logger.debug(f"Could not read commits for {unit.owner_id}: {result}")
            return _all_failed(unit)

        commits = result.value
        logger.debug(
            f"{unit.owner_id}: {len(commits)} commit(s) since {base_branch} "
            f"for {len(unit.tasks)} task(s)"
        )
        analysis = match_tasks_to_commits(unit.owner_id, unit.tasks, commits)
    except Exception as e:
        logger.warning(f"Completion analysis failed for {unit.owner_id}: {e}")
        return _all_failed(unit)

    logger.debug(
        f"{unit.owner_id}: completed={analysis.completed_task_ids} "
        f"failed={analysis.failed_task_ids}"
    )
    return analysis
