"""
Child process bookkeeping for the process group.

Each ManagedProcess follows NOT_STARTED -> RUNNING -> CRASHED -> RESTARTING ->
RUNNING; STOPPED is reached only through stop(). Output lines are forwarded to
the log with a `[name]` prefix.
"""
import logging
import os
import subprocess
import threading
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)
output_logger = logging.getLogger("orchestrator.output")


class ProcessState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    CRASHED = "crashed"
    RESTARTING = "restarting"
    STOPPED = "stopped"


TRANSITIONS = {
    ProcessState.NOT_STARTED: {ProcessState.RUNNING, ProcessState.CRASHED},
    ProcessState.RUNNING: {ProcessState.CRASHED, ProcessState.RESTARTING, ProcessState.STOPPED},
    ProcessState.CRASHED: {ProcessState.RESTARTING, ProcessState.STOPPED},
    ProcessState.RESTARTING: {ProcessState.RUNNING, ProcessState.CRASHED},
    ProcessState.STOPPED: {ProcessState.RUNNING, ProcessState.RESTARTING},
}


class DetachedCommand:
    """Launch a command in its own session without waiting for it."""

    def __init__(self, argv: List[str], cwd: Optional[Path] = None):
        self.argv = argv
        self.cwd = cwd

    def __call__(self) -> int:
        kwargs = dict(
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            close_fds=True,
            cwd=self.cwd,
        )
        if os.name == "nt":
            kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True
        proc = subprocess.Popen(self.argv, **kwargs)
        return proc.pid


class ManagedProcess:
    def __init__(self, name: str, argv: List[str], ready_marker: Optional[str] = None,
                 cwd: Optional[Path] = None, env: Optional[Dict[str, str]] = None,
                 final_exit_codes: Iterable[int] = ()):
        self.name = name
        self.argv = argv
        self.ready_marker = ready_marker
        self.cwd = cwd
        self.env = env
        # Exit codes that mean "do not bring this one back".
        self.final_exit_codes = frozenset(final_exit_codes)
        self.state = ProcessState.NOT_STARTED
        self.proc: Optional[subprocess.Popen] = None
        self.exit_code: Optional[int] = None
        self.ready = False
        self.restarts = 0
        self._reader: Optional[threading.Thread] = None

    def _transition(self, new_state: ProcessState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"{self.name}: invalid transition {self.state.value} -> {new_state.value}")
        logger.debug(f"{self.name}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    @property
    def pid(self) -> Optional[int]:
        return self.proc.pid if self.proc else None

    def start(self) -> bool:
        if self.state == ProcessState.RUNNING:
            return True
        logger.info(f"===== Starting {self.name} =====")
        self.ready = False
        self.exit_code = None
        try:
            self.proc = subprocess.Popen(
                self.argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
                cwd=self.cwd,
                env=self.env,
            )
        except OSError as e:
            logger.error(f"[{self.name} ERROR] Failed to start: {e}")
            self._transition(ProcessState.CRASHED)
            return False
        self._transition(ProcessState.RUNNING)
        self._reader = threading.Thread(target=self._pump_output, name=f"{self.name}-output", daemon=True)
        self._reader.start()
        return True

    def _pump_output(self) -> None:
        proc = self.proc
        if proc is None or proc.stdout is None:
            return
        for line in proc.stdout:
            line = line.rstrip()
            if not line:
                continue
            output_logger.info(f"[{self.name}] {line}")
            if self.ready_marker and not self.ready and self.ready_marker in line:
                self.ready = True
                logger.info(f"[{self.name}] is running correctly.")

    def poll(self) -> ProcessState:
        if self.state == ProcessState.RUNNING and self.proc is not None:
            code = self.proc.poll()
            if code is not None:
                self.exit_code = code
                logger.error(f"[{self.name}] exited with code {code}")
                self._transition(ProcessState.CRASHED)
        return self.state

    def stop(self, timeout: float = 10.0) -> None:
        self._terminate(timeout)
        if self.state != ProcessState.STOPPED and ProcessState.STOPPED in TRANSITIONS[self.state]:
            self._transition(ProcessState.STOPPED)

    def restart(self, timeout: float = 10.0) -> bool:
        self._transition(ProcessState.RESTARTING)
        self._terminate(timeout)
        self.restarts += 1
        return self.start()

    def _terminate(self, timeout: float) -> None:
        if self.proc is None or self.proc.poll() is not None:
            return
        logger.info(f"Stopping {self.name} (pid {self.proc.pid})")
        self.proc.terminate()
        try:
            self.proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"{self.name} did not stop within {timeout}s, killing")
            self.proc.kill()
            self.proc.wait()
        self.exit_code = self.proc.returncode
