"""Repository lock for implement sessions.

Provides PID-based locking so two sessions never drive the same
repository at once.
"""

import os
from pathlib import Path
from types import TracebackType

from swarm.errors import LockError

LOCK_FILE = "swarm.lock"


class RepoLock:
    """PID-based lock on a repository.

    The lock file lives inside the worktree directory, which is excluded
    from git, and contains the holder's PID.

    Usage:
        with RepoLock(repo_path):
            # Run session - lock is held
            ...
        # Lock is released

    Attributes:
        lock_path: Path to the lock file
    """

    def __init__(self, repo_path: str | Path, worktree_dir: str = ".worktrees") -> None:
        self.lock_path = Path(repo_path) / worktree_dir / LOCK_FILE

    def acquire(self) -> bool:
        """Try to acquire the lock.

        Stale locks (from dead processes or with invalid content) are taken
        over.

        Returns:
            True if lock acquired, False if held by another running process
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
        """PID stored in the lock file, or None if absent or unreadable."""
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
            # Exists but owned by someone else
            return True

    def __enter__(self) -> "RepoLock":
        """Acquire lock on context entry.

        Raises:
            LockError: If another running session holds the lock
        """
        if not self.acquire():
            raise LockError(
                f"Another swarm session is running on this repository "
                f"(PID: {self.get_holder_pid()})"
            )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
