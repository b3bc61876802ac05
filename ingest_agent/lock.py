"""Single-instance lock for the ingestion process (POSIX flock on a pid file)."""
import fcntl
import logging
import os
from pathlib import Path
from typing import Optional

from common.errors import AlreadyRunningError

logger = logging.getLogger(__name__)

# Process exit status of an ingestion agent that found the lock already held.
EXIT_ALREADY_RUNNING = 3


def holder_pid(path: Path) -> Optional[int]:
    """Pid written by the current or last holder, if readable."""
    try:
        raw = path.read_text().strip()
    except (FileNotFoundError, OSError):
        return None
    try:
        return int(raw) if raw else None
    except ValueError:
        return None


def is_locked(path: Path) -> bool:
    """True when another process holds the lock."""
    if not path.exists():
        return False
    with open(path, "a+") as handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return True
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    return False


class InstanceLock:
    def __init__(self, path: Path):
        self.path = path
        self._handle = None

    @property
    def acquired(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a+")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            raise AlreadyRunningError(holder_pid(self.path))
        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle
        logger.info(f"Acquired instance lock {self.path}")

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
        logger.info(f"Released instance lock {self.path}")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
