"""
Heartbeat marker.

The ingestion process touches a file at a fixed interval while its OPC UA
session answers; the watchdog only ever looks at the file's mtime.
"""
import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


def touch(path: Path, now: Optional[float] = None) -> None:
    """Create or refresh the marker. Contents are informational; mtime is the signal."""
    path.parent.mkdir(parents=True, exist_ok=True)
    stamp = now if now is not None else time.time()
    with open(path, "w", encoding="utf-8") as f:
        f.write(f"{datetime.fromtimestamp(stamp, timezone.utc).isoformat()} pid={os.getpid()}\n")
    os.utime(path, (stamp, stamp))


def marker_age(path: Path, now: Optional[float] = None) -> Optional[float]:
    """Seconds since the marker was last touched, or None if it does not exist."""
    try:
        mtime = path.stat().st_mtime
    except FileNotFoundError:
        return None
    return (now if now is not None else time.time()) - mtime


class HeartbeatWriter:
    """Touches the marker every `interval` seconds after `check` succeeds."""

    def __init__(self, path: Path, interval: float, check: Optional[Callable[[], Awaitable[None]]] = None):
        self.path = path
        self.interval = interval
        self.check = check
        self.beats = 0

    async def beat(self) -> None:
        if self.check is not None:
            await self.check()
        touch(self.path)
        self.beats += 1

    async def run(self, stop: asyncio.Event) -> None:
        """Beat until `stop` is set. A failing liveness check propagates."""
        logger.info(f"Heartbeat every {self.interval}s -> {self.path}")
        while not stop.is_set():
            try:
                await self.beat()
            except Exception as e:
                logger.error(f"Liveness check failed, heartbeat stopped: {e}")
                raise ConnectionError("Active check failed") from e
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
