"""
Process group orchestrator.

Starts the time-series store (when this host manages it), then the read and
write APIs, then the ingestion agent. A child that exits goes CRASHED ->
RESTARTING -> RUNNING up to MAX_RESTARTS times. An ingestion child that finds
the instance lock taken is not brought back: the lock holder, usually started
through orchestrator.restart by the watchdog, already covers it.
"""
import logging
import shlex
import signal
import sys
import threading
import time
from typing import Callable, List, Optional

from common.config import Settings, get_settings
from common.logging_setup import configure_logging
from common.store import TimescaleStore
from ingest_agent.lock import EXIT_ALREADY_RUNNING
from orchestrator.process import ManagedProcess, ProcessState

logger = logging.getLogger(__name__)


def _module_argv(module: str) -> List[str]:
    return [sys.executable, "-m", module]


class ProcessGroup:
    def __init__(
        self,
        settings: Settings,
        store_probe: Optional[Callable[[], bool]] = None,
        store_wait: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.store_probe = store_probe or TimescaleStore(settings.dsn, settings.db_table).ping
        self.store_wait = store_wait
        self.max_restarts = settings.max_restarts
        self._sleep = sleep

        self.store: Optional[ManagedProcess] = None
        if settings.store_command:
            self.store = ManagedProcess(
                "store", shlex.split(settings.store_command), ready_marker="ready to accept connections"
            )
        self.read_api = ManagedProcess("read-api", _module_argv("read_api.main"), ready_marker="Uvicorn running")
        self.write_api = ManagedProcess("write-api", _module_argv("write_api.main"), ready_marker="Uvicorn running")
        self.ingest = ManagedProcess(
            "ingest", _module_argv("ingest_agent.main"), ready_marker="Connected to OPC UA server",
            final_exit_codes={EXIT_ALREADY_RUNNING},
        )

    @property
    def processes(self) -> List[ManagedProcess]:
        members = [self.read_api, self.write_api, self.ingest]
        if self.store is not None:
            members.insert(0, self.store)
        return members

    def start_store(self) -> bool:
        if self.store is None:
            return True
        if self.store_probe():
            logger.info("[store] Already running. Skipping startup.")
            return True
        if not self.store.start():
            return False
        deadline = time.monotonic() + self.store_wait
        while time.monotonic() < deadline:
            if self.store.poll() != ProcessState.RUNNING:
                return False
            if self.store_probe():
                logger.info("[store] accepting connections")
                return True
            self._sleep(1.0)
        logger.warning(f"[store] not reachable after {self.store_wait}s, continuing")
        return False

    def start_all(self) -> None:
        self.start_store()
        self.read_api.start()
        self.write_api.start()
        self.ingest.start()
        logger.info("All services have been started.")

    def monitor_once(self) -> List[ManagedProcess]:
        """Poll every child, restart the ones that crashed; returns those crashed since the last poll."""
        crashed = []
        for proc in self.processes:
            before = proc.state
            if proc.poll() == ProcessState.CRASHED and before != ProcessState.CRASHED:
                logger.error(f"[{proc.name}] crashed (exit code {proc.exit_code})")
                crashed.append(proc)
                self.recover(proc)
        return crashed

    def recover(self, proc: ManagedProcess) -> bool:
        if proc.exit_code in proc.final_exit_codes:
            logger.info(f"[{proc.name}] exit code {proc.exit_code} is final, not restarting")
            return False
        if proc.restarts >= self.max_restarts:
            logger.error(f"[{proc.name}] gave up after {proc.restarts} restarts")
            return False
        logger.warning(f"[{proc.name}] restarting ({proc.restarts + 1}/{self.max_restarts})")
        return proc.restart()

    def stop_all(self, timeout: float = 10.0) -> None:
        for proc in reversed(self.processes):
            try:
                proc.stop(timeout)
            except Exception as e:
                logger.error(f"Error stopping {proc.name}: {e}")

    def run(self, stop: threading.Event, poll_interval: float = 1.0) -> None:
        self.start_all()
        try:
            while not stop.is_set():
                self.monitor_once()
                stop.wait(poll_interval)
        finally:
            self.stop_all()


def main() -> int:
    settings = get_settings()
    configure_logging("orchestrator", settings.log_level, settings.log_dir)
    logger.info("Starting OPC-UA historian process group...")

    stop = threading.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, lambda signum, frame: stop.set())

    ProcessGroup(settings).run(stop)
    logger.info("Process group stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
