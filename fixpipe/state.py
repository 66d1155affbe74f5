"""JSON state store for tasks, issues and pipeline runs.

Layout under the state directory:

    tasks.json          list of Task records
    issues.json         list of Issue records
    runs/<run_id>.json  one RunMeta per run
    current_run         id of the run the working tree is bound to
    .gitignore          keeps the whole directory out of git status
"""

import json
import logging
import secrets
from datetime import datetime
from pathlib import Path
from typing import Any

from fixpipe.errors import StateError
from fixpipe.models import Issue, RunMeta, Task

logger = logging.getLogger(__name__)


class StateStore:
    """Reads and writes pipeline state as JSON files.

    Attributes:
        state_dir: Directory holding every state file
    """

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = Path(state_dir)

    @property
    def tasks_path(self) -> Path:
        return self.state_dir / "tasks.json"

    @property
    def issues_path(self) -> Path:
        return self.state_dir / "issues.json"

    @property
    def runs_dir(self) -> Path:
        return self.state_dir / "runs"

    @property
    def worktree_root(self) -> Path:
        return self.state_dir / "worktrees"

    def initialize(self) -> None:
        """Create the state directory layout.

        The directory ignores itself so auto-stash before merging never
        sweeps state files or worktrees into the stash.
        """
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        gitignore = self.state_dir / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text("*\n")

    def _read_json(self, path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        try:
            with open(path) as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Corrupt state file {path}: {e}") from e

    def _write_json(self, path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        tmp_path.replace(path)

    # Tasks

    def load_tasks(self) -> list[Task]:
        return [Task.from_dict(item) for item in self._read_json(self.tasks_path, [])]

    def save_tasks(self, tasks: list[Task]) -> None:
        self._write_json(self.tasks_path, [task.to_dict() for task in tasks])

    def update_task(self, task_id: str, **changes: Any) -> Task:
        """Apply field changes to one task and persist the task list.

        Raises:
            StateError: If no task has the given id
        """
        tasks = self.load_tasks()
        for task in tasks:
            if task.id == task_id:
                for name, value in changes.items():
                    setattr(task, name, value)
                self.save_tasks(tasks)
                return task
        raise StateError(f"Task not found: {task_id}")

    # Issues

    def load_issues(self) -> list[Issue]:
        return [Issue.from_dict(item) for item in self._read_json(self.issues_path, [])]

    def save_issues(self, issues: list[Issue]) -> None:
        self._write_json(self.issues_path, [issue.to_dict() for issue in issues])

    # Runs

    def _run_path(self, run_id: str) -> Path:
        return self.runs_dir / f"{run_id}.json"

    def create_run(self) -> RunMeta:
        """Create a run in the scan phase and make it current."""
        now = datetime.now()
        run = RunMeta(
            id=f"run-{now.strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(2)}",
            phase="scan",
            created_at=now,
        )
        self.save_run(run)
        self.set_current_run(run.id)
        logger.debug(f"Created run {run.id}")
        return run

    def load_run(self, run_id: str) -> RunMeta | None:
        data = self._read_json(self._run_path(run_id), None)
        return RunMeta.from_dict(data) if data is not None else None

    def save_run(self, run: RunMeta) -> None:
        self._write_json(self._run_path(run.id), run.to_dict())

    def list_runs(self) -> list[RunMeta]:
        """All runs, newest first."""
        if not self.runs_dir.exists():
            return []
        runs = []
        for path in self.runs_dir.glob("*.json"):
            run = self.load_run(path.stem)
            if run is not None:
                runs.append(run)
        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    def current_run_id(self) -> str | None:
        path = self.state_dir / "current_run"
        if not path.exists():
            return None
        return path.read_text().strip() or None

    def set_current_run(self, run_id: str) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        (self.state_dir / "current_run").write_text(run_id)

    def current_run(self) -> RunMeta | None:
        run_id = self.current_run_id()
        return self.load_run(run_id) if run_id else None
