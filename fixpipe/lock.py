"""PID-based run lock.

Prevents two pipeline processes from driving the same working tree at
once: merges and the current-run pointer are shared per working tree.
"""

import os
from pathlib import Path
from types import TracebackType

from fixpipe.errors import RunLockedError


class RunLock:
    """PID lock file with stale-lock takeover.

    Usage:
        with RunLock(state_dir):
            # pipeline runs while the lock is held
            ...

    Attributes:
        lock_path: Path to the lock file
    """

    def __init__(self, state_dir: Path, name: str = "pipeline") -> None:
        self.lock_path = Path(state_dir) / f"{name}.lock"

    def acquire(self) -> bool:
        """Try to acquire the lock.

        A lock left by a dead process, or one with unreadable content, is
        taken over.

        Returns:
            True if acquired, False if held by another running process
        """
        if self.lock_path.exists():
            holder_pid = self.get_holder_pid()
            if (
                holder_pid is not None
                and holder_pid != os.getpid()
                and self._is_process_running(holder_pid)
            ):
                return False

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_path.write_text(str(os.getpid()))
        return True

    def release(self) -> None:
        """Release the lock if this process holds it."""
        if self.get_holder_pid() == os.getpid():
            self.lock_path.unlink(missing_ok=True)

    def get_holder_pid(self) -> int | None:
        if not self.lock_path.exists():
            return None
        try:
            return int(self.lock_path.read_text().strip())
        except ValueError:
            return None

    def _is_process_running(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)  # Signal 0 only checks existence
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # Process exists but belongs to another user
            return True

    def __enter__(self) -> "RunLock":
        """Acquire the lock.

        Raises:
            RunLockedError: If another running process holds the lock
        """
        if not self.acquire():
            raise RunLockedError(self.get_holder_pid())
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
