"""Tests for issue-scoped and group-ordered scheduling."""

import pytest

from fixpipe.cancellation import CancellationToken
from fixpipe.coordinator import ExecutionOptions, ParallelExecutionCoordinator
from fixpipe.merge import DeferredMergeEngine
from fixpipe.models import Issue
from fixpipe.scheduler import run_by_group, run_by_issue
from fixpipe.tests.fakes import FakeResolver, FakeVcs, committing_agent, make_task
from fixpipe.vcs import Err, VcsErrorKind

ISSUES = [
    Issue(id="ISSUE-1", severity="medium", symptom="Slow startup"),
    Issue(id="ISSUE-2", severity="critical", symptom="Data loss on save"),
]


def _setup(vcs: FakeVcs, failing: set[str] | None = None, merge_retries: int = 3):
    agent = committing_agent(vcs, failing_owners=failing)
    engine = DeferredMergeEngine(vcs, FakeResolver(), max_retries=merge_retries)
    return agent, ParallelExecutionCoordinator(vcs, agent, engine, "run-1")


def _worktree_order(vcs: FakeVcs) -> list[str]:
    return [call[1] for call in vcs.calls if call[0] == "create_worktree"]


class TestRunByIssue:
    """Tests for run_by_issue()."""

    @pytest.mark.asyncio
    async def test_executes_ready_tasks_grouped_by_issue(self) -> None:
        """Ready tasks form one unit per issue, most severe first."""
        vcs = FakeVcs()
        _, coordinator = _setup(vcs)
        tasks = [
            make_task("t1", issue_id="ISSUE-1"),
            make_task("t2", issue_id="ISSUE-2"),
            make_task("t3", issue_id="ISSUE-1", status="done"),
            make_task("t4", issue_id="ISSUE-1", status="merge_error"),
            make_task("t5", issue_id="ISSUE-9"),
        ]

        summary = await run_by_issue(coordinator, tasks, ISSUES, ExecutionOptions(retry_delay_ms=0))

        assert _worktree_order(vcs) == ["ISSUE-2", "ISSUE-1"]
        by_owner = {r.owner_id: r for r in summary.unit_results}
        assert by_owner["ISSUE-1"].completed_task_ids == ["t1", "t4"]
        assert by_owner["ISSUE-2"].completed_task_ids == ["t2"]
        assert summary.tasks_completed == 3

    @pytest.mark.asyncio
    async def test_no_ready_tasks_returns_empty_summary(self) -> None:
        """Nothing runs when every task is finished or blocked."""
        vcs = FakeVcs()
        agent, coordinator = _setup(vcs)
        tasks = [
            make_task("t1", status="done"),
            make_task("t2", depends_on=["missing"]),
        ]

        summary = await run_by_issue(coordinator, tasks, ISSUES, ExecutionOptions())

        assert summary.unit_results == []
        assert agent.calls == []

    @pytest.mark.asyncio
    async def test_same_issue_dependents_share_the_unit(self) -> None:
        """A dependency inside the issue does not hold its dependent back."""
        vcs = FakeVcs()
        agent, coordinator = _setup(vcs)
        tasks = [
            make_task("t1", issue_id="ISSUE-1", depends_on=["t2"]),
            make_task("t2", issue_id="ISSUE-1"),
        ]

        summary = await run_by_issue(coordinator, tasks, ISSUES, ExecutionOptions(retry_delay_ms=0))

        assert len(agent.calls) == 1
        assert summary.unit_results[0].completed_task_ids == ["t2", "t1"]
        assert summary.tasks_completed == 2
        assert tasks[0].status == "pending"

    @pytest.mark.asyncio
    async def test_cross_issue_dependents_run_after_merge(self) -> None:
        """Work waiting on another issue runs in a later wave."""
        vcs = FakeVcs()
        _, coordinator = _setup(vcs)
        tasks = [
            make_task("t1", issue_id="ISSUE-1", depends_on=["t2"]),
            make_task("t2", issue_id="ISSUE-2"),
        ]

        summary = await run_by_issue(coordinator, tasks, ISSUES, ExecutionOptions(retry_delay_ms=0))

        assert _worktree_order(vcs) == ["ISSUE-2", "ISSUE-1"]
        methods = vcs.methods()
        first_merge = methods.index("merge")
        assert methods.index("create_worktree", first_merge) > first_merge
        assert summary.tasks_completed == 2

    @pytest.mark.asyncio
    async def test_failed_cross_issue_dependency_is_not_attempted(self) -> None:
        """A dependent of a failed task from another issue never starts."""
        vcs = FakeVcs()
        agent, coordinator = _setup(vcs, failing={"ISSUE-2"})
        tasks = [
            make_task("t1", issue_id="ISSUE-1", depends_on=["t2"]),
            make_task("t2", issue_id="ISSUE-2"),
        ]

        summary = await run_by_issue(coordinator, tasks, ISSUES, ExecutionOptions(retry_delay_ms=0))

        assert _worktree_order(vcs) == ["ISSUE-2"]
        assert [r.owner_id for r in summary.unit_results] == ["ISSUE-2"]
        assert summary.tasks_failed == 1


class TestRunByGroup:
    """Tests for run_by_group()."""

    @pytest.mark.asyncio
    async def test_failed_dependency_skips_dependents(self) -> None:
        """Tasks depending on a failed task are skipped, transitively."""
        vcs = FakeVcs()
        _, coordinator = _setup(vcs, failing={"a"})
        tasks = [
            make_task("a", group=0),
            make_task("b", group=1, depends_on=["a"]),
            make_task("c", group=1),
            make_task("d", group=2, depends_on=["b"]),
        ]

        result = await run_by_group(coordinator, tasks, ISSUES, ExecutionOptions(retry_delay_ms=0))

        assert result.statuses == {"a": "failed", "b": "skipped", "c": "done", "d": "skipped"}
        assert result.skipped_task_ids == ["b", "d"]
        assert result.groups_executed == [0, 1, 2]
        assert _worktree_order(vcs) == ["a", "c"]
        assert result.tasks_completed == 1
        assert result.tasks_failed == 1
        assert result.success is False

    @pytest.mark.asyncio
    async def test_does_not_modify_input_tasks(self) -> None:
        """Scheduling works on copies of the task records."""
        vcs = FakeVcs()
        _, coordinator = _setup(vcs)
        tasks = [make_task("a"), make_task("b", group=1)]

        await run_by_group(coordinator, tasks, ISSUES, ExecutionOptions(retry_delay_ms=0))

        assert [t.status for t in tasks] == ["pending", "pending"]

    @pytest.mark.asyncio
    async def test_dependencies_within_a_group_run_in_waves(self) -> None:
        """A task runs after its same-group dependency has merged."""
        vcs = FakeVcs()
        _, coordinator = _setup(vcs)
        tasks = [make_task("x"), make_task("y", depends_on=["x"])]

        result = await run_by_group(coordinator, tasks, ISSUES, ExecutionOptions(retry_delay_ms=0))

        assert result.statuses == {"x": "done", "y": "done"}
        assert _worktree_order(vcs) == ["x", "y"]
        assert vcs.calls.index(("merge_done", "fp/ex/run-1/x")) < vcs.calls.index(
            ("create_worktree", "y", "main", "run-1")
        )
        assert result.success is True

    @pytest.mark.asyncio
    async def test_merge_failure_blocks_dependents(self) -> None:
        """A task whose branch failed to merge cannot satisfy dependents."""
        vcs = FakeVcs()
        vcs.merge_script["fp/ex/run-1/x"] = [Err(VcsErrorKind.MERGE_FAILED, "Merge failed")]
        _, coordinator = _setup(vcs, merge_retries=1)
        tasks = [make_task("x"), make_task("y", group=1, depends_on=["x"])]

        result = await run_by_group(coordinator, tasks, ISSUES, ExecutionOptions(retry_delay_ms=0))

        assert result.statuses == {"x": "failed", "y": "skipped"}
        assert _worktree_order(vcs) == ["x"]

    @pytest.mark.asyncio
    async def test_stops_when_earlier_group_is_unfinished(self) -> None:
        """A group whose predecessors still have open tasks does not start."""
        vcs = FakeVcs()
        agent, coordinator = _setup(vcs)
        tasks = [make_task("r", status="running"), make_task("s", group=1)]

        result = await run_by_group(coordinator, tasks, ISSUES, ExecutionOptions())

        assert result.stopped_at_group == 1
        assert result.groups_executed == [0]
        assert agent.calls == []

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_before_first_group(self) -> None:
        """Nothing is executed once the token is cancelled."""
        vcs = FakeVcs()
        agent, coordinator = _setup(vcs)
        token = CancellationToken()
        token.cancel()

        result = await run_by_group(
            coordinator, [make_task("a")], ISSUES, ExecutionOptions(token=token)
        )

        assert result.stopped_at_group == 0
        assert result.skipped_task_ids == []
        assert agent.calls == []

    @pytest.mark.asyncio
    async def test_group_callback_receives_each_group(self) -> None:
        """on_group_complete is awaited once per executed group."""
        vcs = FakeVcs()
        _, coordinator = _setup(vcs)
        seen = []

        async def on_group_complete(group: int, summary) -> None:
            seen.append((group, summary.tasks_completed))

        await run_by_group(
            coordinator,
            [make_task("a"), make_task("b", group=1), make_task("c", group=1)],
            ISSUES,
            ExecutionOptions(retry_delay_ms=0),
            on_group_complete=on_group_complete,
        )

        assert seen == [(0, 1), (1, 2)]
