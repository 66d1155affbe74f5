"""Shared error types for the fixpipe package."""


class FixpipeError(Exception):
    """Base exception for fixpipe errors.

    Use this for user-facing errors that should have actionable messages.
    """

    pass


class WorkspaceError(FixpipeError):
    """Raised when an isolated worktree cannot be created or cleaned up."""

    pass


class AgentExecutionError(FixpipeError):
    """Raised when an agent session fails.

    The retry runtime classifies the message to decide whether another
    attempt is worthwhile.
    """

    pass


class StateError(FixpipeError):
    """Raised for missing or unreadable state files."""

    pass


class RunLockedError(FixpipeError):
    """Raised when another live process holds the run lock."""

    def __init__(self, holder_pid: int | None) -> None:
        self.holder_pid = holder_pid
        super().__init__(
            f"Pipeline already running (PID: {holder_pid}). "
            "Wait for it to finish or remove the stale lock file."
        )
