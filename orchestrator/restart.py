"""
Restart entrypoint for the ingestion agent.

Safe to call any number of times: a healthy instance (lock held, heartbeat
fresh) is left alone, a stalled instance is terminated before the new one is
launched, and with no instance running a new one is simply started.
"""
import logging
import os
import signal
import sys
import time
from enum import Enum
from typing import Callable, List, Optional

from common.config import Settings, get_settings
from common.logging_setup import configure_logging
from ingest_agent.heartbeat import marker_age
from ingest_agent.lock import holder_pid, is_locked
from orchestrator.process import DetachedCommand

logger = logging.getLogger(__name__)


class RestartOutcome(str, Enum):
    STARTED = "started"
    ALREADY_RUNNING = "already_running"
    REPLACED = "replaced"
    BLOCKED = "blocked"


def ingest_argv() -> List[str]:
    return [sys.executable, "-m", "ingest_agent.main"]


def terminate_holder(settings: Settings, timeout: float, kill: Callable[[int, int], None] = os.kill,
                     sleep: Callable[[float], None] = time.sleep, kill_wait: float = 5.0) -> bool:
    """SIGTERM the lock holder, SIGKILL after `timeout`. True once the lock is free."""
    pid = holder_pid(settings.lock_file)
    if pid is None:
        return not is_locked(settings.lock_file)

    for sig, wait in ((signal.SIGTERM, timeout), (signal.SIGKILL, kill_wait)):
        logger.warning(f"Sending {sig.name} to stalled ingestion (pid {pid})")
        try:
            kill(pid, sig)
        except ProcessLookupError:
            pass
        deadline = time.monotonic() + wait
        while time.monotonic() < deadline:
            if not is_locked(settings.lock_file):
                return True
            sleep(0.2)
    return not is_locked(settings.lock_file)


def restart_ingest(settings: Settings, launch: Optional[Callable[[], int]] = None,
                   kill: Callable[[int, int], None] = os.kill) -> RestartOutcome:
    launch = launch or DetachedCommand(ingest_argv())

    if is_locked(settings.lock_file):
        age = marker_age(settings.heartbeat_file)
        if age is not None and age <= settings.heartbeat_stale_after:
            logger.info("Ingestion already running and healthy, nothing to restart")
            return RestartOutcome.ALREADY_RUNNING
        if not terminate_holder(settings, settings.shutdown_timeout, kill=kill):
            logger.error("Stalled ingestion still holds the instance lock, not starting a second one")
            return RestartOutcome.BLOCKED
        pid = launch()
        logger.info(f"Ingestion replaced (new pid {pid})")
        return RestartOutcome.REPLACED

    pid = launch()
    logger.info(f"Ingestion started (pid {pid})")
    return RestartOutcome.STARTED


def main() -> int:
    settings = get_settings()
    configure_logging("restart", settings.log_level, settings.log_dir)
    outcome = restart_ingest(settings)
    return 1 if outcome == RestartOutcome.BLOCKED else 0


if __name__ == "__main__":
    sys.exit(main())
