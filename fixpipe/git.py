"""Git implementation of the VcsService protocol.

Runs the git CLI through asyncio subprocesses so worktree creation, commit
inspection and merges never block the event loop while agents run.
"""

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

from fixpipe.vcs import (
    AUTO_STASH_MESSAGE,
    CommitEntry,
    Err,
    MergeOutcome,
    Ok,
    RebaseOutcome,
    VcsErrorKind,
    VcsResult,
    Worktree,
    generate_nonce,
    make_agent_branch_name,
    slugify,
)

logger = logging.getLogger(__name__)

_LOG_LINE = re.compile(r"^([0-9a-fA-F]+) (.*)$")


@dataclass
class GitOutput:
    """Raw result of one git invocation."""

    exit_code: int
    stdout: str
    stderr: str


def parse_log_oneline(output: str) -> list[CommitEntry]:
    """Parse `git log --oneline` output into commit entries."""
    entries: list[CommitEntry] = []
    for line in output.splitlines():
        match = _LOG_LINE.match(line)
        if match:
            entries.append(CommitEntry(hash=match.group(1), message=match.group(2)))
    return entries


def parse_name_only(output: str) -> list[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]


class GitVcsService:
    """Drives the git CLI for one repository.

    Attributes:
        repo_dir: The caller's working tree; merges happen here
        worktree_root: Directory under which per-run worktrees are created
    """

    def __init__(self, repo_dir: Path, worktree_root: Path) -> None:
        self.repo_dir = Path(repo_dir)
        self.worktree_root = Path(worktree_root)
        self._env = {**os.environ, "GIT_EDITOR": "true", "GIT_TERMINAL_PROMPT": "0"}

    async def _git(self, *args: str, cwd: Path | None = None) -> VcsResult[GitOutput]:
        """Run a git command and capture its output.

        Non-zero exit codes are returned in the GitOutput; only a failure to
        launch git at all becomes an Err.
        """
        workdir = cwd or self.repo_dir
        logger.debug(f"git {' '.join(args)} (cwd={workdir})")
        try:
            process = await asyncio.create_subprocess_exec(
                "git",
                *args,
                cwd=str(workdir),
                env=self._env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()
        except (FileNotFoundError, NotADirectoryError, PermissionError) as e:
            return Err(
                VcsErrorKind.COMMAND_FAILED,
                f"Failed to run git {args[0]}: {e}",
                {"args": list(args), "cwd": str(workdir)},
            )

        return Ok(
            GitOutput(
                exit_code=process.returncode if process.returncode is not None else -1,
                stdout=stdout.decode(errors="replace"),
                stderr=stderr.decode(errors="replace"),
            )
        )

    @staticmethod
    def _classify_checkout_error(branch: str, stderr: str) -> Err:
        if "local changes" in stderr and "would be overwritten" in stderr:
            return Err(
                VcsErrorKind.DIRTY_WORKTREE,
                f"Cannot checkout {branch}: uncommitted changes would be overwritten",
                {"stderr": stderr},
            )
        if "already used by worktree" in stderr or "already checked out at" in stderr:
            return Err(
                VcsErrorKind.BRANCH_LOCKED,
                f"Cannot checkout {branch}: branch is checked out in another worktree",
                {"stderr": stderr},
            )
        return Err(
            VcsErrorKind.BRANCH_NOT_FOUND,
            f"Failed to checkout {branch}",
            {"stderr": stderr},
        )

    async def checkout(self, branch: str) -> VcsResult[None]:
        result = await self._git("checkout", branch)
        if isinstance(result, Err):
            return result
        if result.value.exit_code != 0:
            return self._classify_checkout_error(branch, result.value.stderr)
        return Ok(None)

    async def current_branch(self) -> VcsResult[str]:
        result = await self._git("rev-parse", "--abbrev-ref", "HEAD")
        if isinstance(result, Err):
            return result
        if result.value.exit_code != 0:
            return Err(
                VcsErrorKind.NOT_A_REPOSITORY,
                "Cannot determine current branch",
                {"stderr": result.value.stderr},
            )
        return Ok(result.value.stdout.strip())

    # Worktrees

    async def create_worktree(
        self, owner_ref: str, base_branch: str, run_id: str
    ) -> VcsResult[Worktree]:
        """Create a fresh worktree on a new branch cut from base_branch.

        The directory is named after the owner slug plus the branch nonce,
        so owners whose slugs collide never share a directory and nothing
        that already exists is removed. Stale worktree registrations are
        pruned first. `worktree add -B` creates or resets the branch
        atomically.
        """
        slug = slugify(owner_ref)
        if not slug:
            return Err(
                VcsErrorKind.COMMAND_FAILED,
                f"Owner reference {owner_ref!r} has no branch-safe characters",
            )

        nonce = generate_nonce()
        branch_name = make_agent_branch_name(run_id, owner_ref, nonce)
        worktree_path = self.worktree_root / run_id / f"{slug}-{nonce}"
        if worktree_path.exists():
            return Err(
                VcsErrorKind.COMMAND_FAILED,
                "Worktree directory already exists",
                {"worktree_path": str(worktree_path)},
            )
        worktree_path.parent.mkdir(parents=True, exist_ok=True)

        pruned = await self._git("worktree", "prune")
        if isinstance(pruned, Err):
            return pruned

        added = await self._git(
            "worktree", "add", "-B", branch_name, str(worktree_path), base_branch
        )
        if isinstance(added, Err):
            return added
        if added.value.exit_code != 0:
            return Err(
                VcsErrorKind.COMMAND_FAILED,
                "Failed to create worktree",
                {
                    "stderr": added.value.stderr,
                    "worktree_path": str(worktree_path),
                    "branch_name": branch_name,
                },
            )

        logger.debug(f"Created worktree {worktree_path} on {branch_name}")
        return Ok(Worktree(path=worktree_path, branch_name=branch_name))

    async def cleanup_worktree(self, path: Path) -> VcsResult[None]:
        """Remove a worktree directory; its branch and commits are kept."""
        if Path(path).exists():
            status = await self._git("status", "--porcelain", cwd=Path(path))
            if isinstance(status, Ok) and status.value.stdout.strip():
                logger.warning(f"Discarding uncommitted changes in worktree {path}")

        removed = await self._git("worktree", "remove", "-f", str(path))
        if isinstance(removed, Err):
            return removed
        if removed.value.exit_code != 0:
            return Err(
                VcsErrorKind.COMMAND_FAILED,
                f"Failed to remove worktree {path}",
                {"stderr": removed.value.stderr},
            )
        return Ok(None)

    # Rebase / merge

    async def rebase(self, branch: str, onto: str) -> VcsResult[RebaseOutcome]:
        """Check out branch and rebase it onto `onto`."""
        checked_out = await self.checkout(branch)
        if isinstance(checked_out, Err):
            return checked_out

        result = await self._git("rebase", onto)
        if isinstance(result, Err):
            return result
        if result.value.exit_code == 0:
            return Ok(RebaseOutcome(success=True))

        conflicts = await self.get_conflicted_files()
        if isinstance(conflicts, Err):
            return conflicts
        if conflicts.value:
            return Ok(
                RebaseOutcome(
                    success=False, has_conflicts=True, conflicted_files=conflicts.value
                )
            )

        return Err(
            VcsErrorKind.REBASE_FAILED,
            "Rebase failed",
            {"stderr": result.value.stderr},
        )

    async def merge(
        self, branch: str, into: str, message: str | None = None
    ) -> VcsResult[MergeOutcome]:
        """Check out `into` and merge branch with a merge commit."""
        checked_out = await self.checkout(into)
        if isinstance(checked_out, Err):
            return checked_out

        result = await self._git(
            "merge", branch, "--no-ff", "-m", message or f"Merge {branch} into {into}"
        )
        if isinstance(result, Err):
            return result

        if result.value.exit_code == 0:
            head = await self._git("rev-parse", "HEAD")
            merge_commit = (
                head.value.stdout.strip()
                if isinstance(head, Ok) and head.value.exit_code == 0
                else None
            )
            return Ok(MergeOutcome(success=True, merge_commit=merge_commit))

        conflicts = await self.get_conflicted_files()
        if isinstance(conflicts, Err):
            return conflicts
        if conflicts.value:
            return Ok(
                MergeOutcome(
                    success=False, has_conflicts=True, conflicted_files=conflicts.value
                )
            )

        return Err(
            VcsErrorKind.MERGE_FAILED,
            "Merge failed",
            {"stderr": result.value.stderr},
        )

    async def abort_rebase(self) -> VcsResult[None]:
        # Nothing to abort is not an error
        await self._git("rebase", "--abort")
        return Ok(None)

    async def abort_merge(self) -> VcsResult[None]:
        await self._git("merge", "--abort")
        return Ok(None)

    async def _rebase_in_progress(self) -> bool:
        for name in ("rebase-merge", "rebase-apply"):
            result = await self._git("rev-parse", "--git-path", name)
            if isinstance(result, Ok) and result.value.exit_code == 0:
                candidate = Path(result.value.stdout.strip())
                if not candidate.is_absolute():
                    candidate = self.repo_dir / candidate
                if candidate.exists():
                    return True
        return False

    async def _merge_in_progress(self) -> bool:
        result = await self._git("rev-parse", "-q", "--verify", "MERGE_HEAD")
        return isinstance(result, Ok) and result.value.exit_code == 0

    async def continue_rebase(self) -> VcsResult[bool]:
        """Stage everything and continue a rebase after conflict resolution.

        Returns Ok(False) when the rebase stops again on another conflict.
        A rebase the agent already finished counts as completed.
        """
        if not await self._rebase_in_progress():
            return Ok(True)

        added = await self._git("add", "-A")
        if isinstance(added, Err):
            return added

        result = await self._git("-c", "core.editor=true", "rebase", "--continue")
        if isinstance(result, Err):
            return result
        return Ok(result.value.exit_code == 0)

    async def complete_merge(self) -> VcsResult[bool]:
        """Commit a merge whose conflicts have been resolved.

        Returns Ok(False) while conflicted files remain. A merge the agent
        already committed counts as completed.
        """
        if not await self._merge_in_progress():
            return Ok(True)

        remaining = await self.get_conflicted_files()
        if isinstance(remaining, Err):
            return remaining
        if remaining.value:
            return Ok(False)

        added = await self._git("add", "-A")
        if isinstance(added, Err):
            return added
        committed = await self._git("commit", "--no-edit")
        if isinstance(committed, Err):
            return committed
        return Ok(committed.value.exit_code == 0)

    async def get_conflicted_files(self) -> VcsResult[list[str]]:
        result = await self._git("diff", "--name-only", "--diff-filter=U")
        if isinstance(result, Err):
            return result
        if result.value.exit_code != 0:
            return Err(
                VcsErrorKind.COMMAND_FAILED,
                "Failed to list conflicted files",
                {"stderr": result.value.stderr},
            )
        return Ok(parse_name_only(result.value.stdout))

    # Branches

    async def delete_local_branch(self, branch: str, force: bool = False) -> VcsResult[None]:
        result = await self._git("branch", "-D" if force else "-d", branch)
        if isinstance(result, Err):
            return result
        if result.value.exit_code != 0:
            return Err(
                VcsErrorKind.COMMAND_FAILED,
                f"Failed to delete branch {branch}",
                {"stderr": result.value.stderr},
            )
        return Ok(None)

    async def branch_exists(self, branch: str) -> bool:
        result = await self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
        return isinstance(result, Ok) and result.value.exit_code == 0

    # Working tree state

    async def has_uncommitted_changes(self) -> bool:
        result = await self._git("status", "--porcelain")
        return isinstance(result, Ok) and bool(result.value.stdout.strip())

    async def stash(self, message: str = AUTO_STASH_MESSAGE) -> VcsResult[bool]:
        """Stash tracked and untracked changes.

        Returns Ok(False) when there is nothing to stash.
        """
        if not await self.has_uncommitted_changes():
            return Ok(False)

        result = await self._git("stash", "push", "-u", "-m", message)
        if isinstance(result, Err):
            return result
        if result.value.exit_code != 0:
            return Err(
                VcsErrorKind.COMMAND_FAILED,
                "Failed to stash changes",
                {"stderr": result.value.stderr},
            )
        return Ok(True)

    async def pop_stash(self) -> VcsResult[bool]:
        result = await self._git("stash", "pop")
        if isinstance(result, Err):
            return result
        if result.value.exit_code != 0:
            if "No stash entries found" in result.value.stderr:
                return Ok(False)
            return Err(
                VcsErrorKind.COMMAND_FAILED,
                "Failed to pop stash",
                {"stderr": result.value.stderr},
            )
        return Ok(True)

    # History

    async def commits_since(
        self, worktree_dir: Path, base_branch: str
    ) -> VcsResult[list[CommitEntry]]:
        result = await self._git(
            "log", "--oneline", f"{base_branch}..HEAD", cwd=Path(worktree_dir)
        )
        if isinstance(result, Err):
            return result
        if result.value.exit_code != 0:
            return Err(
                VcsErrorKind.COMMAND_FAILED,
                f"Failed to read commits since {base_branch}",
                {"stderr": result.value.stderr},
            )
        return Ok(parse_log_oneline(result.value.stdout))
