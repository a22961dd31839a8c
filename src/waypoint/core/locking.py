"""Session lock: one orchestrator per (reportTitle, runId).

The lock is a file created with O_CREAT | O_EXCL holding the owner's pid and
acquisition time. A lock is stale, and may be replaced, when its pid no longer
exists or it is older than stale_after_seconds. Checkpoint writes assume this
single-writer discipline; there is no distributed locking.
"""

import contextlib
import json
import os
import time
from pathlib import Path
from types import TracebackType

import structlog

from waypoint.contracts.errors import SessionLockedError

logger = structlog.get_logger(__name__)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if os.name == "nt":
        # os.kill(pid, 0) terminates the process on Windows; rely on age only
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    return True


class SessionLock:
    """Exclusive lock file for one research run.

    Usage::

        with SessionLock(paths.session_lock_path(title, run_id)):
            ...  # drive the run
    """

    def __init__(self, path: Path, *, stale_after_seconds: float = 300.0) -> None:
        self.path = path
        self._stale_after = stale_after_seconds
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _read_owner(self) -> tuple[int | None, float | None]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return int(data["pid"]), float(data["acquired_at"])
        except (OSError, ValueError, KeyError, TypeError):
            # Half-written or foreign file: fall back to its mtime
            try:
                return None, self.path.stat().st_mtime
            except OSError:
                return None, None

    def _is_stale(self) -> bool:
        pid, acquired_at = self._read_owner()
        if pid is not None and not _pid_alive(pid):
            return True
        if acquired_at is not None and time.time() - acquired_at > self._stale_after:
            return True
        return False

    def acquire(self) -> None:
        """Take the lock, replacing a stale one.

        Raises:
            SessionLockedError: If a live owner holds the lock
        """
        if self._held:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if not self._is_stale():
                    owner, _ = self._read_owner()
                    raise SessionLockedError(str(self.path), owner) from None
                logger.warning("session_lock_stale_replaced", lock_path=str(self.path))
                with contextlib.suppress(FileNotFoundError):
                    self.path.unlink()
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({"pid": os.getpid(), "acquired_at": time.time()}, f)
                f.flush()
                os.fsync(f.fileno())
            self._held = True
            logger.debug("session_lock_acquired", lock_path=str(self.path))
            return
        owner, _ = self._read_owner()
        raise SessionLockedError(str(self.path), owner)

    def release(self) -> None:
        if not self._held:
            return
        with contextlib.suppress(FileNotFoundError):
            self.path.unlink()
        self._held = False
        logger.debug("session_lock_released", lock_path=str(self.path))

    def __enter__(self) -> "SessionLock":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
