"""
Watchdog Agent
Polls the ingestion heartbeat file and restarts ingestion when it goes stale or
missing, then emails an operator. Shares nothing with the ingestion process but
the heartbeat file's mtime.
"""
import logging
import shlex
import signal
import smtplib
import sys
import threading
import time
from datetime import datetime
from email.message import EmailMessage
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

from common.config import Settings, get_settings
from common.logging_setup import configure_logging
from ingest_agent.heartbeat import marker_age
from orchestrator.process import DetachedCommand

logger = logging.getLogger(__name__)


class HealthState(str, Enum):
    HEALTHY = "healthy"
    STALE = "stale"
    MISSING = "missing"


class EmailAlerter:
    """Best-effort SMTP-over-SSL alerts. Missing credentials disable sending."""

    def __init__(self, user: Optional[str], password: Optional[str], to: Optional[str] = None,
                 host: str = "smtp.gmail.com", port: int = 465, timeout: float = 10.0):
        self.user = user
        self.password = password
        self.to = to or user
        self.host = host
        self.port = port
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailAlerter":
        return cls(settings.email_user, settings.email_pass, settings.email_to,
                   settings.smtp_host, settings.smtp_port)

    @property
    def configured(self) -> bool:
        return bool(self.user and self.password)

    def send(self, subject: str, body: str) -> bool:
        if not self.configured:
            logger.warning("Email credentials missing, skipping email alert")
            return False
        message = EmailMessage()
        message["From"] = self.user
        message["To"] = self.to
        message["Subject"] = subject
        message.set_content(body)
        try:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.login(self.user, self.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"EMAIL ERROR: {e}")
            return False
        logger.info(f"EMAIL SENT to {self.to}")
        return True


class Watchdog:
    """
    Heartbeat health check with restart.

    STALE means the marker is older than `stale_after` seconds (an age of exactly
    `stale_after` is still HEALTHY); MISSING means there is no marker. Either one
    triggers a restart unless a restart is already in flight: from the moment a
    restart is launched, further restarts are held back until a HEALTHY poll or
    until `restart_grace` seconds have passed.
    """

    def __init__(
        self,
        heartbeat_path: Path,
        stale_after: float,
        restart: Callable[[], Optional[int]],
        alerter: Optional[EmailAlerter] = None,
        restart_grace: float = 60.0,
        clock: Callable[[], float] = time.time,
        timezone: str = "UTC",
    ):
        self.heartbeat_path = heartbeat_path
        self.stale_after = stale_after
        self.restart = restart
        self.alerter = alerter
        self.restart_grace = restart_grace
        self.clock = clock
        self.timezone = ZoneInfo(timezone)
        self.restarts = 0
        self.last_state: Optional[HealthState] = None
        self._restart_started: Optional[float] = None

    @property
    def restart_pending(self) -> bool:
        return self._restart_started is not None

    def check(self, now: Optional[float] = None) -> HealthState:
        age = marker_age(self.heartbeat_path, now if now is not None else self.clock())
        if age is None:
            return HealthState.MISSING
        if age > self.stale_after:
            return HealthState.STALE
        return HealthState.HEALTHY

    def poll_once(self) -> HealthState:
        now = self.clock()
        state = self.check(now)
        if state == HealthState.HEALTHY:
            if self._restart_started is not None:
                logger.info("Heartbeat back after restart")
                self._restart_started = None
            logger.info("System healthy.")
        elif self._restart_started is not None and now - self._restart_started < self.restart_grace:
            logger.info(f"Heartbeat {state.value}, restart in flight since {now - self._restart_started:.0f}s")
        else:
            self._trigger_restart(state, now)
        self.last_state = state
        return state

    def _trigger_restart(self, state: HealthState, now: float) -> None:
        if state == HealthState.MISSING:
            logger.warning("Heartbeat file missing - restarting service...")
        else:
            logger.error("No heartbeat detected - restarting service...")

        try:
            pid = self.restart()
        except OSError as e:
            logger.error(f"Restart failed to launch: {e}")
            return
        self._restart_started = now
        self.restarts += 1
        logger.info(f"Main service restarted (pid {pid})")

        if self.alerter is not None:
            stamp = datetime.fromtimestamp(now, self.timezone).strftime("%d/%m/%Y %H:%M:%S")
            try:
                self.alerter.send(
                    "OPC UA System Restarted",
                    f"Main service was unresponsive (heartbeat {state.value}). Restarted at {stamp}.",
                )
            except Exception as e:
                logger.error(f"Alert failed: {e}")

    def run(self, poll_interval: float, stop: threading.Event) -> None:
        logger.info("Watchdog started - monitoring OPC UA service health...")
        while not stop.is_set():
            self.poll_once()
            stop.wait(poll_interval)
        logger.info("Watchdog stopped")


def restart_argv(settings: Settings) -> List[str]:
    if settings.restart_command:
        return shlex.split(settings.restart_command)
    return [sys.executable, "-m", "orchestrator.restart"]


def main() -> int:
    settings = get_settings()
    configure_logging("watchdog", settings.log_level, settings.log_dir)

    watchdog = Watchdog(
        heartbeat_path=settings.heartbeat_file,
        stale_after=settings.heartbeat_stale_after,
        restart=DetachedCommand(restart_argv(settings)),
        alerter=EmailAlerter.from_settings(settings),
        restart_grace=settings.watchdog_restart_grace,
        timezone=settings.display_timezone,
    )

    stop = threading.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, lambda signum, frame: stop.set())

    watchdog.run(settings.watchdog_poll_interval, stop)
    return 0


if __name__ == "__main__":
    sys.exit(main())
