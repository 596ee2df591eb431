"""Per-plan run lock.

Only one orchestrator process may write a plan's document at a time. The
lock is a file holding the owner's PID; a lock left behind by a dead
process is taken over.
"""

import os
from pathlib import Path
from types import TracebackType

from workplan.errors import PlanLockedError


class PlanLock:
    """PID file guarding a plan's persisted document.

    Usage:
        with PlanLock(state_dir, "auth_plan"):
            ...  # run, resume or decide

    Attributes:
        lock_path: ``<state_dir>/<plan_id>.lock``
    """

    def __init__(self, state_dir: Path, plan_id: str) -> None:
        self.plan_id = plan_id
        self.lock_path = Path(state_dir) / f"{plan_id}.lock"

    def acquire(self) -> bool:
        """Take the lock unless a running process already owns it.

        Returns:
            True if this process now holds the lock
        """
        holder = self.holder_pid()
        if holder is not None and holder != os.getpid() and _pid_alive(holder):
            return False

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_path.write_text(str(os.getpid()))
        return True

    def release(self) -> None:
        """Remove the lock file if this process owns it."""
        if self.holder_pid() == os.getpid():
            self.lock_path.unlink(missing_ok=True)

    def holder_pid(self) -> int | None:
        try:
            return int(self.lock_path.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def __enter__(self) -> "PlanLock":
        if not self.acquire():
            raise PlanLockedError(self.plan_id, self.holder_pid())
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    return True
