"""Deferred merge engine.

Reconciles the branches produced by parallel execution into the target
branch one at a time. Each successful merge changes the target, so the
next branch is rebased onto the post-merge state, never a stale snapshot.

Per branch, up to max_retries attempts:

1. Missing branch: fail with "Branch does not exist", no retry.
2. Rebase onto the target.
   - Clean: merge with the unit's message, delete the branch on success,
     abort the merge and retry otherwise.
   - Conflicts: ask the resolver. On failure abort the rebase and, if
     attempts remain, fall back to a direct merge, resolving its conflicts
     or aborting it.
   - Any other rebase error: abort the rebase, same direct-merge fallback.
3. Branches that never merge are left intact for manual inspection.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from opentelemetry import trace

from fixpipe import telemetry
from fixpipe.conflicts import ConflictResolver
from fixpipe.models import MergeBranchResult
from fixpipe.vcs import AUTO_STASH_MESSAGE, Err, VcsService

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class MergeRequest:
    """A branch queued for merging, with its human-readable commit message."""

    branch: str
    owner_id: str
    message: str


@dataclass
class MergeSummary:
    merged: int = 0
    failed: list[MergeBranchResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.merged + len(self.failed)


def summarize(results: list[MergeBranchResult]) -> MergeSummary:
    return MergeSummary(
        merged=sum(1 for r in results if r.success),
        failed=[r for r in results if not r.success],
    )


def manual_merge_commands(branches: list[str], target_branch: str) -> list[str]:
    """Git commands an operator can run to merge the given branches by hand."""
    commands = [f"git checkout {target_branch}"]
    for branch in branches:
        commands.append(f"git merge {branch}")
    return commands


class DeferredMergeEngine:
    """Sequential rebase-then-merge of completed branches."""

    def __init__(
        self,
        vcs: VcsService,
        resolver: ConflictResolver,
        max_retries: int = 3,
        tracer: trace.Tracer | None = None,
    ) -> None:
        self.vcs = vcs
        self.resolver = resolver
        self.max_retries = max_retries
        self.tracer = tracer or trace.get_tracer("fixpipe")

    async def merge_sequentially(
        self, requests: list[MergeRequest], target_branch: str
    ) -> list[MergeBranchResult]:
        """Merge branches strictly one after another, in input order.

        Returns:
            One MergeBranchResult per request, in the same order
        """
        results: list[MergeBranchResult] = []
        if not requests:
            return results

        logger.info(f"Merging {len(requests)} branch(es) into {target_branch}")

        for request in requests:
            with self.tracer.start_as_current_span("fixpipe.merge") as span:
                span.set_attribute("merge.branch", request.branch)
                span.set_attribute("merge.owner_id", request.owner_id)
                result = await self._merge_one(request, target_branch)
                span.set_attribute("merge.success", result.success)
            telemetry.record_merge(result.success)
            results.append(result)

            if result.success:
                logger.info(f"Merged {request.branch} into {target_branch}")
            else:
                logger.error(f"Failed to merge {request.branch}: {result.error}")
                logger.info(
                    f"Manual merge: git checkout {target_branch} && git merge {request.branch}"
                )

        checkout = await self.vcs.checkout(target_branch)
        if isinstance(checkout, Err):
            logger.warning(f"Could not return to {target_branch}: {checkout}")

        summary = summarize(results)
        logger.info(f"Merge summary: {summary.merged}/{summary.total} branch(es) merged")
        for failure in summary.failed:
            logger.info(f"  - {failure.branch}: {failure.error}")
        return results

    async def _merge_one(
        self, request: MergeRequest, target_branch: str
    ) -> MergeBranchResult:
        branch = request.branch

        if not await self.vcs.branch_exists(branch):
            return MergeBranchResult(
                branch=branch,
                owner_id=request.owner_id,
                success=False,
                error="Branch does not exist",
            )

        last_error = "Unknown error"

        for attempt in range(1, self.max_retries + 1):
            attempts_remain = attempt < self.max_retries
            logger.debug(f"Merge attempt {attempt}/{self.max_retries} for {branch}")

            rebase = await self.vcs.rebase(branch, target_branch)

            if isinstance(rebase, Err):
                last_error = f"Rebase failed: {rebase}"
                await self.vcs.abort_rebase()
                if attempts_remain and await self._direct_merge(
                    request, target_branch, resolve_conflicts=False
                ):
                    return await self._merged(request)
                continue

            outcome = rebase.value
            if outcome.success:
                merged, error = await self._merge_after_rebase(request, target_branch)
                if merged:
                    return await self._merged(request)
                last_error = error
                continue

            if outcome.has_conflicts:
                files = outcome.conflicted_files
                resolution = await self.resolver.resolve(
                    files, branch, target_branch, "rebase"
                )
                if resolution.success:
                    merged, error = await self._merge_after_rebase(request, target_branch)
                    if merged:
                        return await self._merged(request)
                    last_error = error
                    continue

                last_error = f"AI failed to resolve rebase conflicts ({', '.join(files)})"
                logger.warning(f"{branch}: {last_error}")
                await self.vcs.abort_rebase()
                if attempts_remain and await self._direct_merge(
                    request, target_branch, resolve_conflicts=True
                ):
                    return await self._merged(request)
                continue

            last_error = "Rebase failed"
            await self.vcs.abort_rebase()
            if attempts_remain and await self._direct_merge(
                request, target_branch, resolve_conflicts=False
            ):
                return await self._merged(request)

        return MergeBranchResult(
            branch=branch,
            owner_id=request.owner_id,
            success=False,
            error=last_error,
        )

    async def _merge_after_rebase(
        self, request: MergeRequest, target_branch: str
    ) -> tuple[bool, str]:
        merge = await self.vcs.merge(request.branch, target_branch, request.message)
        if not isinstance(merge, Err) and merge.value.success:
            return True, ""
        await self.vcs.abort_merge()
        if isinstance(merge, Err):
            return False, f"Merge failed: {merge}"
        if merge.value.has_conflicts:
            return False, (
                f"Merge conflicts after rebase ({', '.join(merge.value.conflicted_files)})"
            )
        return False, "Merge failed"

    async def _direct_merge(
        self, request: MergeRequest, target_branch: str, resolve_conflicts: bool
    ) -> bool:
        """Merge without rebasing first. Returns True when the branch merged."""
        logger.info(f"Falling back to direct merge for {request.branch}")
        merge = await self.vcs.merge(request.branch, target_branch, request.message)
        if isinstance(merge, Err):
            logger.warning(f"Direct merge failed for {request.branch}: {merge}")
            await self.vcs.abort_merge()
            return False

        outcome = merge.value
        if outcome.success:
            return True

        if outcome.has_conflicts and resolve_conflicts:
            resolution = await self.resolver.resolve(
                outcome.conflicted_files, request.branch, target_branch, "merge"
            )
            if resolution.success:
                return True

        await self.vcs.abort_merge()
        return False

    async def _merged(self, request: MergeRequest) -> MergeBranchResult:
        deleted = await self.vcs.delete_local_branch(request.branch, force=True)
        if isinstance(deleted, Err):
            logger.warning(f"Merged {request.branch} but could not delete it: {deleted}")
        return MergeBranchResult(branch=request.branch, owner_id=request.owner_id, success=True)

    async def with_auto_stash(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run fn with the caller's uncommitted changes stashed away.

        The stash is popped afterwards even when fn raises.
        """
        stashed = False
        if await self.vcs.has_uncommitted_changes():
            result = await self.vcs.stash(AUTO_STASH_MESSAGE)
            if isinstance(result, Err):
                logger.warning(f"Could not stash local changes: {result}")
            else:
                stashed = result.value
                if stashed:
                    logger.info("Stashed uncommitted changes before merging")

        try:
            return await fn()
        finally:
            if stashed:
                popped = await self.vcs.pop_stash()
                if isinstance(popped, Err):
                    logger.warning(
                        f"Could not restore stashed changes: {popped}. "
                        f"Run 'git stash pop' to recover them"
                    )
                else:
                    logger.info("Restored stashed changes")
