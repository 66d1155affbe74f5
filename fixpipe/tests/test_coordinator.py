"""Tests for the parallel execution coordinator."""

import asyncio
from pathlib import Path

import pytest

from fixpipe.cancellation import CancellationToken
from fixpipe.coordinator import (
    ExecutionOptions,
    ParallelExecutionCoordinator,
    await_callback,
)
from fixpipe.merge import DeferredMergeEngine
from fixpipe.models import AgentResult, Issue, OwnerGroup
from fixpipe.tests.fakes import (
    FakeAgent,
    FakeResolver,
    FakeVcs,
    committing_agent,
    make_task,
)


def _unit(owner: str, *task_ids: str, symptom: str = "") -> OwnerGroup:
    issue = Issue(id=owner, severity="high", symptom=symptom)
    return OwnerGroup(
        owner_id=owner,
        tasks=[make_task(t, issue_id=owner) for t in task_ids],
        issue=issue,
    )


def _coordinator(vcs: FakeVcs, agent, run_id: str = "run-1") -> ParallelExecutionCoordinator:
    engine = DeferredMergeEngine(vcs, FakeResolver())
    return ParallelExecutionCoordinator(vcs, agent, engine, run_id)


def _options(**overrides) -> ExecutionOptions:
    overrides.setdefault("retry_delay_ms", 0)
    return ExecutionOptions(**overrides)


class TestCoordinatorHappyPath:
    """Units that complete every task are merged."""

    @pytest.mark.asyncio
    async def test_single_issue_with_two_tasks_is_merged(self) -> None:
        """Both tasks are completed and the branch merges with the symptom."""
        vcs = FakeVcs()
        agent = committing_agent(vcs)
        coordinator = _coordinator(vcs, agent)

        summary = await coordinator.run(
            [_unit("ISSUE-1", "t1", "t2", symptom="Crash on save")], _options()
        )

        assert summary.tasks_completed == 2
        assert summary.tasks_failed == 0
        assert vcs.commits["ISSUE-1"] == [
            "[ISSUE-1] Task 1: Fix t1",
            "[ISSUE-1] Task 2: Fix t2",
        ]
        assert [m.success for m in summary.merge_results] == [True]
        status = summary.branch_statuses[0]
        assert status.status == "complete"
        assert status.merged is True
        assert ("merge", "fp/ex/run-1/issue-1", "main", "Crash on save") in vcs.calls
        assert summary.success is True

    @pytest.mark.asyncio
    async def test_tokens_are_summed_across_retries(self) -> None:
        """A retried agent session accumulates usage from every attempt."""
        vcs = FakeVcs()

        def commit_on_second_attempt(prompt: str, work_dir: Path) -> None:
            if len(agent.calls) == 2:
                vcs.add_commits(work_dir.name, "[ISSUE-1] Task 1: Fix t1")

        agent = FakeAgent(
            results=[
                AgentResult(
                    success=False, error="rate limit exceeded", input_tokens=3, output_tokens=1
                ),
                AgentResult(success=True, input_tokens=10, output_tokens=5),
            ],
            on_execute=commit_on_second_attempt,
        )
        coordinator = _coordinator(vcs, agent)

        summary = await coordinator.run([_unit("ISSUE-1", "t1")], _options())

        assert len(agent.calls) == 2
        assert summary.total_input_tokens == 13
        assert summary.total_output_tokens == 6
        assert summary.tasks_completed == 1

    @pytest.mark.asyncio
    async def test_callbacks_are_awaited(self) -> None:
        """on_unit_complete fires per unit and on_merge_complete once."""
        vcs = FakeVcs()
        coordinator = _coordinator(vcs, committing_agent(vcs))
        unit_results = []
        merge_batches = []

        async def on_unit_complete(result) -> None:
            unit_results.append(result.owner_id)

        options = _options(
            on_unit_complete=on_unit_complete,
            on_merge_complete=merge_batches.append,
        )
        await coordinator.run([_unit("A", "a1"), _unit("B", "b1")], options)

        assert sorted(unit_results) == ["A", "B"]
        assert len(merge_batches) == 1
        assert len(merge_batches[0]) == 2

    @pytest.mark.asyncio
    async def test_prime_context_runs_before_agent(self, tmp_path: Path) -> None:
        """The worktree is primed with the unit before the session starts."""
        vcs = FakeVcs(root=tmp_path)
        order = []
        agent = FakeAgent(on_execute=lambda prompt, wd: order.append("agent"))
        coordinator = _coordinator(vcs, agent)

        def prime(unit, path) -> None:
            order.append(("prime", unit.owner_id, path))

        await coordinator.run([_unit("A", "a1")], _options(prime_context=prime))

        assert order == [("prime", "A", tmp_path / "A"), "agent"]


class TestCoordinatorFailures:
    """Component failures are classified, never raised."""

    @pytest.mark.asyncio
    async def test_partial_progress_is_reported_but_not_merged(self) -> None:
        """A session that crashes after two commits leaves a partial branch."""
        vcs = FakeVcs()
        agent = committing_agent(vcs, stop_after=2)
        coordinator = _coordinator(vcs, agent)

        summary = await coordinator.run([_unit("ISSUE-1", "t1", "t2", "t3")], _options())

        result = summary.unit_results[0]
        assert result.completed_task_ids == ["t1", "t2"]
        assert result.failed_task_ids == ["t3"]
        assert "agent session crashed" in result.error
        assert summary.branch_statuses[0].status == "partial"
        assert summary.merge_results == []
        assert "rebase" not in vcs.methods()

    @pytest.mark.asyncio
    async def test_worktree_failure_fails_only_that_unit(self) -> None:
        """A unit without a worktree has every task failed; others proceed."""
        vcs = FakeVcs()
        vcs.failing_worktrees.add("ISSUE-2")
        agent = committing_agent(vcs)
        coordinator = _coordinator(vcs, agent)

        summary = await coordinator.run(
            [_unit("ISSUE-1", "t1"), _unit("ISSUE-2", "t2", "t3")], _options()
        )

        failed = next(r for r in summary.unit_results if r.owner_id == "ISSUE-2")
        assert failed.failed_task_ids == ["t2", "t3"]
        assert failed.error.startswith("Worktree creation failed")
        assert failed.branch_name is None
        assert len(agent.calls) == 1
        assert [m.branch for m in summary.merge_results] == ["fp/ex/run-1/issue-1"]

    @pytest.mark.asyncio
    async def test_every_task_is_classified(self) -> None:
        """Completed and failed task ids cover every task exactly once."""
        vcs = FakeVcs()
        agent = committing_agent(vcs, failing_owners={"B"})
        coordinator = _coordinator(vcs, agent)
        units = [_unit("A", "a1", "a2"), _unit("B", "b1", "b2")]

        summary = await coordinator.run(units, _options())

        for unit, result in zip(units, summary.unit_results):
            classified = result.completed_task_ids + result.failed_task_ids
            assert sorted(classified) == sorted(unit.task_ids)
            assert not set(result.completed_task_ids) & set(result.failed_task_ids)
        assert summary.tasks_completed == 2
        assert summary.tasks_failed == 2

    @pytest.mark.asyncio
    async def test_non_retryable_failure_is_not_retried(self) -> None:
        """Authentication errors stop after the first attempt."""
        vcs = FakeVcs()
        agent = committing_agent(vcs, failing_owners={"A"})
        coordinator = _coordinator(vcs, agent)

        summary = await coordinator.run([_unit("A", "a1")], _options(max_retries=3))

        assert len(agent.calls) == 1
        assert "invalid api key" in summary.unit_results[0].error

    @pytest.mark.asyncio
    async def test_fail_fast_stops_dispatching_new_units(self) -> None:
        """After a failed unit, queued units are reported as not started."""
        vcs = FakeVcs()
        agent = committing_agent(vcs, failing_owners={"A"})
        coordinator = _coordinator(vcs, agent)
        reported = []

        summary = await coordinator.run(
            [_unit("A", "a1"), _unit("B", "b1")],
            _options(max_concurrent=1, fail_fast=True, on_unit_complete=reported.append),
        )

        assert len(agent.calls) == 1
        skipped = summary.unit_results[1]
        assert skipped.failed_task_ids == ["b1"]
        assert "fail-fast" in skipped.error
        assert [r.owner_id for r in reported] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_callback_errors_are_logged_not_raised(self) -> None:
        """A failing on_unit_complete does not abort the batch."""
        vcs = FakeVcs()
        coordinator = _coordinator(vcs, committing_agent(vcs))

        def explode(result) -> None:
            raise ValueError("callback broke")

        summary = await coordinator.run(
            [_unit("A", "a1")], _options(on_unit_complete=explode)
        )

        assert summary.tasks_completed == 1
        assert summary.merge_results[0].success is True


class TestCoordinatorBarriers:
    """Ordering guarantees between execution, cleanup and merge."""

    @pytest.mark.asyncio
    async def test_units_run_concurrently_but_merge_sequentially(self) -> None:
        """Two units overlap in execution; their merges never interleave."""
        vcs = FakeVcs()
        in_flight = 0
        peak = 0

        class TrackingAgent(FakeAgent):
            async def execute(self, prompt, work_dir, model_override=None, on_progress=None):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                try:
                    return await inner.execute(prompt, work_dir, model_override, on_progress)
                finally:
                    in_flight -= 1

        inner = committing_agent(vcs, delay=0.01)
        coordinator = _coordinator(vcs, TrackingAgent())

        summary = await coordinator.run(
            [_unit("ISSUE-1", "t1"), _unit("ISSUE-2", "t2")], _options(max_concurrent=2)
        )

        assert peak == 2
        assert all(m.success for m in summary.merge_results)
        first, second = (m.branch for m in summary.merge_results)
        calls = vcs.calls
        assert calls.index(("rebase", second, "main")) > calls.index(("merge_done", first))

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self) -> None:
        """No more than max_concurrent sessions run at once."""
        vcs = FakeVcs()
        in_flight = 0
        peak = 0
        inner = committing_agent(vcs, delay=0.01)

        class TrackingAgent(FakeAgent):
            async def execute(self, prompt, work_dir, model_override=None, on_progress=None):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                try:
                    return await inner.execute(prompt, work_dir, model_override, on_progress)
                finally:
                    in_flight -= 1

        coordinator = _coordinator(vcs, TrackingAgent())
        units = [_unit(f"ISSUE-{n}", f"t{n}") for n in range(5)]

        await coordinator.run(units, _options(max_concurrent=2))

        assert peak == 2

    @pytest.mark.asyncio
    async def test_worktrees_are_cleaned_before_any_rebase(self) -> None:
        """Every worktree is removed before the first merge operation."""
        vcs = FakeVcs()
        coordinator = _coordinator(vcs, committing_agent(vcs))

        await coordinator.run([_unit("A", "a1"), _unit("B", "b1")], _options())

        methods = vcs.methods()
        last_cleanup = max(i for i, m in enumerate(methods) if m == "cleanup_worktree")
        assert methods.count("cleanup_worktree") == 2
        assert last_cleanup < methods.index("rebase")

    @pytest.mark.asyncio
    async def test_merge_order_follows_unit_order(self) -> None:
        """Branches are merged in the order the units were given."""
        vcs = FakeVcs()
        coordinator = _coordinator(vcs, committing_agent(vcs))

        summary = await coordinator.run(
            [_unit("C", "c1"), _unit("A", "a1"), _unit("B", "b1")], _options()
        )

        assert [m.owner_id for m in summary.merge_results] == ["C", "A", "B"]

    @pytest.mark.asyncio
    async def test_merge_runs_under_auto_stash(self) -> None:
        """Local changes are stashed before rebasing and restored after merging."""
        vcs = FakeVcs()
        vcs.dirty = True
        coordinator = _coordinator(vcs, committing_agent(vcs))

        await coordinator.run([_unit("A", "a1")], _options())

        methods = vcs.methods()
        assert methods.index("stash") < methods.index("rebase")
        assert methods.index("pop_stash") > methods.index("merge_done")
        assert vcs.dirty is True


class TestCoordinatorOptions:
    """skip_merge and cancellation."""

    @pytest.mark.asyncio
    async def test_skip_merge_leaves_branches_unmerged(self) -> None:
        """Completed branches are reported but not merged."""
        vcs = FakeVcs()
        coordinator = _coordinator(vcs, committing_agent(vcs))

        summary = await coordinator.run([_unit("A", "a1")], _options(skip_merge=True))

        assert summary.merge_results == []
        assert summary.branch_statuses[0].status == "complete"
        assert summary.branch_statuses[0].merged is False
        assert "rebase" not in vcs.methods()

    @pytest.mark.asyncio
    async def test_cancelled_token_starts_no_units(self) -> None:
        """With a cancelled token no worktree is created."""
        vcs = FakeVcs()
        agent = committing_agent(vcs)
        coordinator = _coordinator(vcs, agent)
        token = CancellationToken()
        token.cancel("test")

        summary = await coordinator.run(
            [_unit("A", "a1"), _unit("B", "b1")], _options(token=token)
        )

        assert agent.calls == []
        assert "create_worktree" not in vcs.methods()
        assert all(r.error == "cancelled" for r in summary.unit_results)
        assert summary.tasks_failed == 2

    @pytest.mark.asyncio
    async def test_cancellation_during_execution_skips_merge(self) -> None:
        """Branches finished before cancellation are not merged."""
        vcs = FakeVcs()
        token = CancellationToken()
        inner = committing_agent(vcs)

        class CancellingAgent(FakeAgent):
            async def execute(self, prompt, work_dir, model_override=None, on_progress=None):
                result = await inner.execute(prompt, work_dir, model_override, on_progress)
                token.cancel("interrupted")
                return result

        coordinator = _coordinator(vcs, CancellingAgent())

        summary = await coordinator.run(
            [_unit("A", "a1"), _unit("B", "b1")], _options(max_concurrent=1, token=token)
        )

        assert summary.unit_results[0].success is True
        assert summary.unit_results[1].error == "cancelled"
        assert summary.merge_results == []
        assert "cleanup_worktree" in vcs.methods()
        assert "rebase" not in vcs.methods()

    @pytest.mark.asyncio
    async def test_empty_unit_list(self) -> None:
        """No units yields an empty summary."""
        vcs = FakeVcs()
        summary = await _coordinator(vcs, FakeAgent()).run([], _options())

        assert summary.tasks_completed == 0
        assert vcs.calls == []


class TestAwaitCallback:
    """Tests for await_callback()."""

    @pytest.mark.asyncio
    async def test_handles_sync_async_and_none(self) -> None:
        """Sync and async callbacks are both invoked; None is ignored."""
        seen = []

        async def async_cb(value) -> None:
            await asyncio.sleep(0)
            seen.append(("async", value))

        await await_callback(lambda value: seen.append(("sync", value)), 1)
        await await_callback(async_cb, 2)
        await await_callback(None, 3)

        assert seen == [("sync", 1), ("async", 2)]
