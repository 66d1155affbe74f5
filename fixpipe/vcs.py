"""Version-control capability interface.

Defines the narrow VcsService protocol the execution core depends on, the
tagged Ok/Err result every VCS call returns, and branch naming helpers.
GitVcsService in fixpipe.git is the concrete implementation.
"""

import random
import re
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Generic, Protocol, TypeVar, Union

T = TypeVar("T")

AGENT_BRANCH_PREFIX = "fp/ex/"
AUTO_STASH_MESSAGE = "fixpipe-auto-stash-before-merge"
MAX_SLUG_LENGTH = 50


class VcsErrorKind(str, Enum):
    """Classification of VCS failures."""

    COMMAND_FAILED = "COMMAND_FAILED"
    BRANCH_NOT_FOUND = "BRANCH_NOT_FOUND"
    BRANCH_LOCKED = "BRANCH_LOCKED"
    DIRTY_WORKTREE = "DIRTY_WORKTREE"
    MERGE_FAILED = "MERGE_FAILED"
    REBASE_FAILED = "REBASE_FAILED"
    NOT_A_REPOSITORY = "NOT_A_REPOSITORY"


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful VCS result carrying a value."""

    value: T
    ok: ClassVar[bool] = True


@dataclass(frozen=True)
class Err:
    """Failed VCS result.

    Attributes:
        kind: Failure classification
        message: Human-readable description
        context: Extra details such as stderr or the command run
    """

    kind: VcsErrorKind
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    ok: ClassVar[bool] = False

    def __str__(self) -> str:
        stderr = self.context.get("stderr")
        if stderr:
            return f"{self.message}: {stderr.strip()}"
        return self.message


VcsResult = Union[Ok[T], Err]


@dataclass
class Worktree:
    """An isolated working copy bound to one branch."""

    path: Path
    branch_name: str


@dataclass
class RebaseOutcome:
    success: bool
    has_conflicts: bool = False
    conflicted_files: list[str] = field(default_factory=list)


@dataclass
class MergeOutcome:
    success: bool
    has_conflicts: bool = False
    conflicted_files: list[str] = field(default_factory=list)
    merge_commit: str | None = None


@dataclass
class CommitEntry:
    hash: str
    message: str


class VcsService(Protocol):
    """Capabilities the execution core needs from version control.

    Every operation returns a VcsResult instead of raising, except the
    boolean queries branch_exists() and has_uncommitted_changes().
    """

    async def create_worktree(
        self, owner_ref: str, base_branch: str, run_id: str
    ) -> VcsResult[Worktree]: ...

    async def cleanup_worktree(self, path: Path) -> VcsResult[None]: ...

    async def checkout(self, branch: str) -> VcsResult[None]: ...

    async def current_branch(self) -> VcsResult[str]: ...

    async def rebase(self, branch: str, onto: str) -> VcsResult[RebaseOutcome]: ...

    async def merge(
        self, branch: str, into: str, message: str | None = None
    ) -> VcsResult[MergeOutcome]: ...

    async def abort_rebase(self) -> VcsResult[None]: ...

    async def abort_merge(self) -> VcsResult[None]: ...

    async def continue_rebase(self) -> VcsResult[bool]: ...

    async def complete_merge(self) -> VcsResult[bool]: ...

    async def delete_local_branch(self, branch: str, force: bool = False) -> VcsResult[None]: ...

    async def branch_exists(self, branch: str) -> bool: ...

    async def has_uncommitted_changes(self) -> bool: ...

    async def stash(self, message: str = AUTO_STASH_MESSAGE) -> VcsResult[bool]: ...

    async def pop_stash(self) -> VcsResult[bool]: ...

    async def get_conflicted_files(self) -> VcsResult[list[str]]: ...

    async def commits_since(
        self, worktree_dir: Path, base_branch: str
    ) -> VcsResult[list[CommitEntry]]: ...


def slugify(text: str, max_length: int = MAX_SLUG_LENGTH) -> str:
    """Convert text to a branch-safe slug.

    Lowercases, collapses runs of non-alphanumerics to '-', strips leading
    and trailing dashes, and truncates to max_length.
    """
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_length]


def generate_nonce() -> str:
    """Short unique suffix: base36 timestamp plus four random characters."""
    alphabet = string.digits + string.ascii_lowercase
    millis = int(time.time() * 1000)
    stamp = ""
    while millis:
        millis, remainder = divmod(millis, 36)
        stamp = alphabet[remainder] + stamp
    suffix = "".join(random.choice(alphabet) for _ in range(4))
    return f"{stamp or '0'}-{suffix}"


def make_agent_branch_name(
    run_id: str, owner_ref: str, nonce: str | None = None
) -> str:
    """Build the branch name for a unit of work.

    Format: fp/ex/<run_id>/<owner-slug>[-<nonce>]
    """
    branch = f"{AGENT_BRANCH_PREFIX}{run_id}/{slugify(owner_ref)}"
    if nonce:
        branch += f"-{nonce}"
    return branch
