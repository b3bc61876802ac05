"""
Buffered time-series writer.

Points are appended to an in-memory buffer by subscription callbacks and written
to the store in batches by a background thread. `flush()` drains the buffer and
returns once the store acknowledged every batch; `close()` flushes then releases
the store connection.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import List

from common.errors import StoreError
from common.models import TimeSeriesPoint

logger = logging.getLogger(__name__)


@dataclass
class SinkStats:
    written: int = 0
    dropped: int = 0
    failed_writes: int = 0
    buffered: int = 0


class TimeSeriesSink:
    def __init__(
        self,
        store,
        batch_size: int = 500,
        flush_interval: float = 1.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.store = store
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.stats = SinkStats()

        self._buffer: List[TimeSeriesPoint] = []
        self._buffer_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._wakeup = threading.Event()
        self._stopping = threading.Event()
        self._closed = False
        self._thread = None

    # ------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="sink-flusher", daemon=True)
        self._thread.start()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stopping.set()
        self._wakeup.set()
        if self._thread is not None:
            self._thread.join(timeout=self.flush_interval + 5)
            self._thread = None
        self.flush()
        self.store.close()
        logger.info(f"Sink closed ({self.stats.written} written, {self.stats.dropped} dropped)")

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------
    # write path
    # ------------------------------------------------------------

    def write_point(self, point: TimeSeriesPoint) -> bool:
        """Buffer one point. Never blocks on the network."""
        if self._closed:
            logger.debug(f"Sink closed, dropping point for {point.node_id}")
            return False
        with self._buffer_lock:
            self._buffer.append(point)
            size = len(self._buffer)
            self.stats.buffered = size
        if size >= self.batch_size:
            self._wakeup.set()
        return True

    def flush(self) -> int:
        """Write everything buffered so far. Returns the number of points written."""
        written = 0
        with self._write_lock:
            while True:
                with self._buffer_lock:
                    batch = self._buffer[: self.batch_size]
                    del self._buffer[: self.batch_size]
                    self.stats.buffered = len(self._buffer)
                if not batch:
                    break
                written += self._write_batch(batch)
        return written

    def _write_batch(self, batch: List[TimeSeriesPoint]) -> int:
        attempt = 0
        while True:
            try:
                count = self.store.write_points(batch)
                self.stats.written += count
                return count
            except StoreError as e:
                self.stats.failed_writes += 1
                attempt += 1
                if attempt > self.max_retries:
                    self.stats.dropped += len(batch)
                    logger.error(
                        f"Dropping {len(batch)} points after {self.max_retries} retries: {e}"
                    )
                    return 0
                logger.warning(f"Store write failed (attempt {attempt}/{self.max_retries}): {e}")
                time.sleep(self.retry_delay)

    def _run(self) -> None:
        while not self._stopping.is_set():
            self._wakeup.wait(self.flush_interval)
            self._wakeup.clear()
            try:
                self.flush()
            except Exception as e:
                logger.error(f"Background flush failed: {e}", exc_info=True)
