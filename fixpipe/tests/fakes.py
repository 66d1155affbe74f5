"""In-memory test doubles for the VCS service, the agent and the resolver.

FakeVcs records every call in order so tests can assert on sequencing,
and yields to the event loop inside rebase/merge so that any accidental
concurrency would interleave the recorded calls.
"""

import asyncio
import re
from collections.abc import Callable
from pathlib import Path

from fixpipe.conflicts import ConflictResolution
from fixpipe.models import AgentResult, Task
from fixpipe.vcs import (
    CommitEntry,
    Err,
    MergeOutcome,
    Ok,
    RebaseOutcome,
    VcsErrorKind,
    VcsResult,
    Worktree,
)


def make_task(
    task_id: str,
    title: str | None = None,
    issue_id: str | None = "ISSUE-1",
    group: int = 0,
    depends_on: list[str] | None = None,
    status: str = "pending",
) -> Task:
    return Task(
        id=task_id,
        title=title or f"Fix {task_id}",
        issue_id=issue_id,
        parallel_group=group,
        depends_on=depends_on or [],
        status=status,  # type: ignore[arg-type]
    )


class FakeVcs:
    """Scriptable VcsService.

    Attributes:
        calls: Every call as (method, *args), in order
        branches: Branches that currently exist
        commits: owner_ref -> commit messages visible in that unit's worktree
        rebase_script: branch -> queued rebase results (default: clean)
        merge_script: branch -> queued merge results (default: clean)
        failing_worktrees: owner refs whose worktree creation fails
    """

    def __init__(self, root: Path = Path("/tmp/fake-worktrees")) -> None:
        self.root = root
        self.calls: list[tuple] = []
        self.branches: set[str] = set()
        self.commits: dict[str, list[str]] = {}
        self.rebase_script: dict[str, list[VcsResult]] = {}
        self.merge_script: dict[str, list[VcsResult]] = {}
        self.failing_worktrees: set[str] = set()
        self.dirty = False
        self.stashed = False
        self.conflicted_files: list[str] = []

    def add_commits(self, owner_ref: str, *messages: str) -> None:
        self.commits.setdefault(owner_ref, []).extend(messages)

    def methods(self) -> list[str]:
        return [call[0] for call in self.calls]

    async def create_worktree(
        self, owner_ref: str, base_branch: str, run_id: str
    ) -> VcsResult[Worktree]:
        self.calls.append(("create_worktree", owner_ref, base_branch, run_id))
        if owner_ref in self.failing_worktrees:
            return Err(VcsErrorKind.COMMAND_FAILED, "Failed to create worktree")
        branch = f"fp/ex/{run_id}/{owner_ref.lower()}"
        self.branches.add(branch)
        return Ok(Worktree(path=self.root / owner_ref, branch_name=branch))

    async def cleanup_worktree(self, path: Path) -> VcsResult[None]:
        self.calls.append(("cleanup_worktree", path))
        return Ok(None)

    async def checkout(self, branch: str) -> VcsResult[None]:
        self.calls.append(("checkout", branch))
        return Ok(None)

    async def current_branch(self) -> VcsResult[str]:
        return Ok("main")

    async def rebase(self, branch: str, onto: str) -> VcsResult[RebaseOutcome]:
        self.calls.append(("rebase", branch, onto))
        await asyncio.sleep(0)
        queued = self.rebase_script.get(branch)
        result = queued.pop(0) if queued else Ok(RebaseOutcome(success=True))
        self.calls.append(("rebase_done", branch))
        return result

    async def merge(
        self, branch: str, into: str, message: str | None = None
    ) -> VcsResult[MergeOutcome]:
        self.calls.append(("merge", branch, into, message))
        await asyncio.sleep(0)
        queued = self.merge_script.get(branch)
        result = queued.pop(0) if queued else Ok(MergeOutcome(success=True))
        self.calls.append(("merge_done", branch))
        return result

    async def abort_rebase(self) -> VcsResult[None]:
        self.calls.append(("abort_rebase",))
        return Ok(None)

    async def abort_merge(self) -> VcsResult[None]:
        self.calls.append(("abort_merge",))
        return Ok(None)

    async def continue_rebase(self) -> VcsResult[bool]:
        self.calls.append(("continue_rebase",))
        return Ok(True)

    async def complete_merge(self) -> VcsResult[bool]:
        self.calls.append(("complete_merge",))
        return Ok(True)

    async def delete_local_branch(self, branch: str, force: bool = False) -> VcsResult[None]:
        self.calls.append(("delete_local_branch", branch, force))
        self.branches.discard(branch)
        return Ok(None)

    async def branch_exists(self, branch: str) -> bool:
        self.calls.append(("branch_exists", branch))
        return branch in self.branches

    async def has_uncommitted_changes(self) -> bool:
        return self.dirty

    async def stash(self, message: str = "") -> VcsResult[bool]:
        self.calls.append(("stash", message))
        if not self.dirty:
            return Ok(False)
        self.dirty = False
        self.stashed = True
        return Ok(True)

    async def pop_stash(self) -> VcsResult[bool]:
        self.calls.append(("pop_stash",))
        if not self.stashed:
            return Ok(False)
        self.stashed = False
        self.dirty = True
        return Ok(True)

    async def get_conflicted_files(self) -> VcsResult[list[str]]:
        self.calls.append(("get_conflicted_files",))
        return Ok(list(self.conflicted_files))

    async def commits_since(
        self, worktree_dir: Path, base_branch: str
    ) -> VcsResult[list[CommitEntry]]:
        self.calls.append(("commits_since", worktree_dir, base_branch))
        messages = self.commits.get(Path(worktree_dir).name, [])
        return Ok(
            [CommitEntry(hash=f"{i:07x}", message=m) for i, m in enumerate(messages)]
        )


class FakeAgent:
    """AgentExecutor returning scripted results.

    `on_execute(prompt, work_dir)` runs before each result is returned, so
    tests can create commits or raise mid-session.
    """

    def __init__(
        self,
        results: list[AgentResult] | None = None,
        on_execute: Callable[[str, Path], None] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.results = list(results or [])
        self.on_execute = on_execute
        self.delay = delay
        self.calls: list[tuple[str, Path]] = []

    async def execute(
        self,
        prompt: str,
        work_dir: Path,
        model_override: str | None = None,
        on_progress=None,
    ) -> AgentResult:
        self.calls.append((prompt, work_dir))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.on_execute is not None:
            self.on_execute(prompt, work_dir)
        if self.results:
            return self.results.pop(0)
        return AgentResult(success=True, response="done", input_tokens=10, output_tokens=5)


class FakeResolver:
    """ConflictResolver returning scripted resolutions (default: failure)."""

    def __init__(self, resolutions: list[ConflictResolution] | None = None) -> None:
        self.resolutions = list(resolutions or [])
        self.calls: list[tuple[list[str], str, str, str]] = []

    async def resolve(
        self, files: list[str], source_branch: str, target_branch: str, operation: str
    ) -> ConflictResolution:
        self.calls.append((list(files), source_branch, target_branch, operation))
        if self.resolutions:
            return self.resolutions.pop(0)
        return ConflictResolution(success=False, unresolved_files=list(files), error="unresolved")


def conflicted_rebase(*files: str) -> Ok:
    return Ok(RebaseOutcome(success=False, has_conflicts=True, conflicted_files=list(files)))


def conflicted_merge(*files: str) -> Ok:
    return Ok(MergeOutcome(success=False, has_conflicts=True, conflicted_files=list(files)))


_COMMIT_LINE = re.compile(r'Commit message: "(.+)"')


def committing_agent(
    vcs: FakeVcs,
    failing_owners: set[str] | None = None,
    stop_after: int | None = None,
    delay: float = 0.0,
) -> FakeAgent:
    """Agent that makes the commits its prompt asks for.

    Owners in failing_owners commit nothing and report failure. With
    stop_after=n the session commits n tasks and then crashes.
    """
    failing = failing_owners or set()

    def on_execute(prompt: str, work_dir: Path) -> None:
        owner = Path(work_dir).name
        if owner in failing:
            return
        messages = _COMMIT_LINE.findall(prompt)
        if stop_after is not None:
            vcs.add_commits(owner, *messages[:stop_after])
            raise RuntimeError("agent session crashed")
        vcs.add_commits(owner, *messages)

    class _Agent(FakeAgent):
        async def execute(self, prompt, work_dir, model_override=None, on_progress=None):
            result = await super().execute(prompt, work_dir, model_override, on_progress)
            if Path(work_dir).name in failing:
                return AgentResult(success=False, error="invalid api key")
            return result

    return _Agent(on_execute=on_execute, delay=delay)
