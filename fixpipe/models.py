"""Data models for fixpipe.

Defines dataclasses for tasks, issues, units of work, execution and merge
results, and pipeline runs. Persistent models round-trip through
to_dict()/from_dict() for the JSON state store.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal

TaskStatus = Literal["pending", "running", "done", "failed", "skipped", "merge_error"]
RunPhase = Literal[
    "scan", "validate", "plan", "consolidate", "exec", "verify", "completed", "failed"
]
BranchState = Literal["complete", "partial", "failed"]

TERMINAL_TASK_STATUSES: frozenset[str] = frozenset({"done", "failed", "skipped"})
RUNNABLE_TASK_STATUSES: frozenset[str] = frozenset({"pending", "merge_error"})

SEVERITY_RANK: dict[str, int] = {
    "critical": 0,
    "high": 1,
    "medium": 2,
    "low": 3,
}
UNKNOWN_SEVERITY_RANK = 4

UNASSIGNED_OWNER = "UNASSIGNED"


@dataclass
class Task:
    """A unit of fix work produced by the plan phase.

    A task is ready only when every id in depends_on resolves to a task
    with status "done". A merge_error task is re-run exactly like a
    pending one.
    """

    id: str
    title: str
    description: str = ""
    files: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    checks: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    parallel_group: int = 0
    status: TaskStatus = "pending"
    issue_id: str | None = None
    error: str | None = None
    branch: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        return cls(
            id=data["id"],
            title=data["title"],
            description=data.get("description", ""),
            files=list(data.get("files", [])),
            depends_on=list(data.get("depends_on", [])),
            checks=list(data.get("checks", [])),
            acceptance_criteria=list(data.get("acceptance_criteria", [])),
            parallel_group=int(data.get("parallel_group", 0)),
            status=data.get("status", "pending"),
            issue_id=data.get("issue_id"),
            error=data.get("error"),
            branch=data.get("branch"),
        )


@dataclass
class AgentResult:
    """Result from one AI coding agent session.

    Captures the structured output from the agent CLI with
    --output-format json.
    """

    success: bool
    response: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    error: str | None = None
    cost_usd: float = 0.0
    duration_ms: int = 0
    session_id: str = ""


@dataclass
class Issue:
    """A confirmed problem in the target repository."""

    id: str
    severity: str
    symptom: str
    status: str = "confirmed"
    related_task_ids: list[str] = field(default_factory=list)

    @property
    def severity_rank(self) -> int:
        return SEVERITY_RANK.get(self.severity.lower(), UNKNOWN_SEVERITY_RANK)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Issue":
        return cls(
            id=data["id"],
            severity=data.get("severity", "unknown"),
            symptom=data.get("symptom", ""),
            status=data.get("status", "confirmed"),
            related_task_ids=list(data.get("related_task_ids", [])),
        )


@dataclass
class OwnerGroup:
    """Tasks bundled for execution in one isolated worktree.

    The owner is an issue for issue-scoped execution, or a single task for
    per-task execution. Task order is significant: the n-th task is the one
    the agent commits as "Task n".
    """

    owner_id: str
    tasks: list[Task]
    issue: Issue | None = None

    @property
    def task_ids(self) -> list[str]:
        return [t.id for t in self.tasks]

    @property
    def merge_message(self) -> str:
        """Human-readable commit message for merging this unit's branch."""
        if self.issue is not None and self.issue.symptom:
            return self.issue.symptom
        if len(self.tasks) == 1:
            return self.tasks[0].title
        return f"Fix {self.owner_id}"


# Alias used by the coordinator API
UnitOfWork = OwnerGroup


@dataclass
class UnitExecutionResult:
    """Classification of every task in a unit after execution.

    completed_task_ids and failed_task_ids are disjoint and together cover
    every task assigned to the unit.
    """

    owner_id: str
    completed_task_ids: list[str]
    failed_task_ids: list[str]
    input_tokens: int = 0
    output_tokens: int = 0
    success: bool = False
    branch_name: str | None = None
    error: str | None = None


@dataclass
class BranchStatus:
    """Post-execution status of a unit's branch.

    Status values:
        complete: every task completed
        partial: some tasks completed
        failed: no task completed
    """

    branch: str
    owner_id: str
    status: BranchState
    completed_count: int
    failed_count: int
    total_count: int
    merged: bool = False
    error: str | None = None

    @staticmethod
    def classify(completed: int, failed: int, total: int) -> BranchState:
        if completed == total and failed == 0:
            return "complete"
        if completed > 0:
            return "partial"
        return "failed"

    @classmethod
    def from_result(cls, result: UnitExecutionResult) -> "BranchStatus":
        completed = len(result.completed_task_ids)
        failed = len(result.failed_task_ids)
        total = completed + failed
        return cls(
            branch=result.branch_name or "",
            owner_id=result.owner_id,
            status=cls.classify(completed, failed, total),
            completed_count=completed,
            failed_count=failed,
            total_count=total,
            error=result.error,
        )


@dataclass
class MergeBranchResult:
    """Outcome of merging one branch into the target branch."""

    branch: str
    owner_id: str
    success: bool
    error: str | None = None


@dataclass
class ExecutionSummary:
    """Aggregate result of a coordinator run."""

    tasks_completed: int = 0
    tasks_failed: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    unit_results: list[UnitExecutionResult] = field(default_factory=list)
    branch_statuses: list[BranchStatus] = field(default_factory=list)
    merge_results: list[MergeBranchResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.tasks_failed == 0 and all(r.success for r in self.merge_results)


@dataclass
class RunMeta:
    """Persistent record of one pipeline run.

    Created at scan start, updated as each phase completes, terminal at
    "completed" or "failed".
    """

    id: str
    phase: RunPhase
    created_at: datetime
    issues_found: int = 0
    issues_validated: int = 0
    tasks_total: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunMeta":
        return cls(
            id=data["id"],
            phase=data["phase"],
            created_at=datetime.fromisoformat(data["created_at"]),
            issues_found=data.get("issues_found", 0),
            issues_validated=data.get("issues_validated", 0),
            tasks_total=data.get("tasks_total", 0),
            tasks_completed=data.get("tasks_completed", 0),
            tasks_failed=data.get("tasks_failed", 0),
        )
