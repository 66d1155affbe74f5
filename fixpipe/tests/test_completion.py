"""Tests for completion analysis from commit history."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from fixpipe.completion import analyze_unit_completion, commit_subject, match_tasks_to_commits
from fixpipe.models import OwnerGroup
from fixpipe.tests.fakes import FakeVcs, make_task
from fixpipe.vcs import CommitEntry, Err, VcsErrorKind


def _unit(*tasks) -> OwnerGroup:
    return OwnerGroup(owner_id="ISSUE-1", tasks=list(tasks))


def _commits(*messages: str) -> list[CommitEntry]:
    return [CommitEntry(hash=f"{i:07x}", message=m) for i, m in enumerate(messages)]


class TestMatchTasksToCommits:
    """Tests for match_tasks_to_commits()."""

    def test_exact_task_number_match(self) -> None:
        """Commits using the task number mark those tasks completed."""
        tasks = [make_task("t1"), make_task("t2"), make_task("t3")]

        analysis = match_tasks_to_commits(
            "ISSUE-1",
            tasks,
            _commits("[ISSUE-1] Task 1: anything", "[ISSUE-1] Task 3: something"),
        )

        assert analysis.completed_task_ids == ["t1", "t3"]
        assert analysis.failed_task_ids == ["t2"]

    def test_title_match_is_case_insensitive(self) -> None:
        """The owner tag plus the task title also counts."""
        tasks = [make_task("t1", title="Guard Null Config")]

        analysis = match_tasks_to_commits(
            "ISSUE-1", tasks, _commits("[ISSUE-1] guard null config in loader")
        )

        assert analysis.completed_task_ids == ["t1"]

    def test_other_owner_commits_do_not_count(self) -> None:
        """A commit tagged for another owner does not match."""
        tasks = [make_task("t1")]

        analysis = match_tasks_to_commits(
            "ISSUE-1", tasks, _commits("[ISSUE-2] Task 1: Fix t1")
        )

        assert analysis.failed_task_ids == ["t1"]

    def test_commit_subject(self) -> None:
        """Subjects follow the [owner] Task n: title convention."""
        assert commit_subject("ISSUE-7", 2, "Fix parser") == "[ISSUE-7] Task 2: Fix parser"


class TestAnalyzeUnitCompletion:
    """Tests for analyze_unit_completion()."""

    @pytest.mark.asyncio
    async def test_no_commits_fails_every_task(self) -> None:
        """Zero commits means every task failed."""
        vcs = FakeVcs()
        unit = _unit(make_task("t1"), make_task("t2"))

        analysis = await analyze_unit_completion(vcs, unit, Path("/tmp/ISSUE-1"), "main")

        assert analysis.completed_task_ids == []
        assert analysis.failed_task_ids == ["t1", "t2"]

    @pytest.mark.asyncio
    async def test_history_error_fails_every_task(self) -> None:
        """An unreadable history is treated as no progress."""
        vcs = MagicMock()
        vcs.commits_since = AsyncMock(
            return_value=Err(VcsErrorKind.COMMAND_FAILED, "Failed to read commits")
        )
        unit = _unit(make_task("t1"))

        analysis = await analyze_unit_completion(vcs, unit, Path("/tmp/x"), "main")

        assert analysis.failed_task_ids == ["t1"]

    @pytest.mark.asyncio
    async def test_exception_fails_every_task(self) -> None:
        """An unexpected exception still yields a total classification."""
        vcs = MagicMock()
        vcs.commits_since = AsyncMock(side_effect=OSError("disk gone"))
        unit = _unit(make_task("t1"), make_task("t2"))

        analysis = await analyze_unit_completion(vcs, unit, Path("/tmp/x"), "main")

        assert analysis.completed_task_ids == []
        assert analysis.failed_task_ids == ["t1", "t2"]

    @pytest.mark.asyncio
    async def test_partial_progress(self) -> None:
        """Commits for some tasks leave the rest failed."""
        vcs = FakeVcs()
        vcs.add_commits("ISSUE-1", "[ISSUE-1] Task 1: Fix t1")
        unit = _unit(make_task("t1"), make_task("t2"))

        analysis = await analyze_unit_completion(vcs, unit, Path("/tmp/ISSUE-1"), "main")

        assert analysis.completed_task_ids == ["t1"]
        assert analysis.failed_task_ids == ["t2"]
