"""Advisory lock file guaranteeing one live run per run kind."""

import logging
import os
from pathlib import Path

from pydantic import ValidationError

from beverage_sync.errors import LockConflictError
from beverage_sync.schemas.run import LockInfo

logger = logging.getLogger(__name__)


def pid_alive(pid: int | str | None) -> bool:
    """Best-effort liveness check for a process on this host."""
    try:
        pid = int(pid)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return False
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    # A finished child of this process lingers as a zombie until reaped
    try:
        reaped, _ = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        return True
    return reaped != pid


class LockManager:
    """
    Lock file at ``path`` holding ``{"startedAt": ..., "pid": ...}``.

    Acquisition is an exclusive create. A lock whose process is gone (or
    whose file cannot be parsed) is stale: it is reported, removed, and
    acquisition is retried once. Release only removes a lock this
    instance created.

    Usage::

        with LockManager(path) as info:
            ...
    """

    def __init__(self, path: Path, pid: int | None = None):
        self.path = path
        self.pid = str(pid if pid is not None else os.getpid())
        self.held: LockInfo | None = None

    def read(self) -> LockInfo | None:
        """Current holder, or None when no lock file exists or it is unreadable."""
        try:
            return LockInfo.model_validate_json(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"Unreadable lock file {self.path}: {e}")
            return None

    def is_stale(self) -> bool:
        """True when a lock file exists but its holder is not running."""
        if not self.path.exists():
            return False
        info = self.read()
        return info is None or not pid_alive(info.pid)

    def _try_create(self, info: LockInfo) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(info.model_dump_json(by_alias=True))
        return True

    def acquire(self) -> LockInfo:
        """
        Take the lock.

        Raises:
            LockConflictError: a live process already holds it
        """
        info = LockInfo(pid=self.pid)
        for _ in range(2):
            if self._try_create(info):
                self.held = info
                logger.info(f"Lock acquired: {self.path} (pid {self.pid})")
                return info

            holder = self.read()
            if holder is not None and pid_alive(holder.pid):
                raise LockConflictError(holder)

            if holder is None:
                logger.warning(f"Removing unreadable stale lock {self.path}")
            else:
                logger.warning(
                    f"Removing stale lock {self.path} "
                    f"(pid {holder.pid} started {holder.started_at} is not running)"
                )
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass

        # Lost the race to another process twice in a row
        holder = self.read()
        raise LockConflictError(holder or LockInfo(pid="unknown"))

    def release(self) -> None:
        if self.held is None:
            return
        current = self.read()
        if current is not None and current.pid == self.held.pid and (
            current.started_at == self.held.started_at
        ):
            try:
                self.path.unlink()
                logger.info(f"Lock released: {self.path}")
            except FileNotFoundError:
                pass
        else:
            logger.warning(f"Lock {self.path} no longer ours; leaving it in place")
        self.held = None

    def __enter__(self) -> LockInfo:
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
