"""Shared fakes for the historian tests: a scripted OPC UA session and an in-memory store."""
import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from common.config import Settings
from common.errors import StoreError
from common.models import StoredRow, TimeSeriesPoint
from ingest_agent.remote import OBJECT, VARIABLE, BrowsePage, Reference
from ingest_agent.sink import SinkStats

# =============================================================================
# OPC UA
# =============================================================================


def var(node_id: str, name: Optional[str] = None) -> Reference:
    return Reference(node_id=node_id, name=name or node_id, node_class=VARIABLE)


def obj(node_id: str, name: Optional[str] = None) -> Reference:
    return Reference(node_id=node_id, name=name or node_id, node_class=OBJECT)


class FakeSubscription:
    def __init__(self, handler):
        self.handler = handler
        self.deleted = False


class FakeSession:
    """
    Scripted stand-in for RemoteSession.

    `tree` maps a container node id to its child references. When `page_size`
    (constructor argument) is set, browse results are cut into pages linked by
    continuation points regardless of what the caller requested.
    """

    def __init__(self, tree: Optional[Dict[str, List[Reference]]] = None, values=None, page_size: int = 0):
        self.tree = tree or {}
        self.values = values or {}
        self.page_size = page_size
        self.read_failures = set()
        self.monitor_failures = set()
        self.browse_failures = set()
        self.monitor_delay = 0.0
        self.calls: List[str] = []
        self.browse_calls: List[str] = []
        self.browse_next_calls = 0
        self.monitored: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.subscription: Optional[FakeSubscription] = None
        self.alive = True
        self._continuations: Dict[bytes, List[Reference]] = {}

    async def connect(self):
        self.calls.append("connect")

    async def close_session(self):
        self.calls.append("close_session")

    async def disconnect(self):
        self.calls.append("disconnect")

    async def check_alive(self):
        if not self.alive:
            raise ConnectionError("server gone")

    def _page(self, refs: List[Reference]) -> BrowsePage:
        if not self.page_size or len(refs) <= self.page_size:
            return BrowsePage(references=list(refs))
        token = f"cp-{len(self._continuations)}".encode()
        self._continuations[token] = refs[self.page_size:]
        return BrowsePage(references=list(refs[: self.page_size]), continuation=token)

    async def browse(self, node_id, page_size=0):
        self.browse_calls.append(node_id)
        if node_id in self.browse_failures:
            raise ConnectionError(f"BadNodeIdUnknown {node_id}")
        return self._page(self.tree.get(node_id, []))

    async def browse_next(self, continuation):
        self.browse_next_calls += 1
        return self._page(self._continuations.pop(continuation))

    async def read_value(self, node_id):
        if node_id in self.read_failures:
            raise ConnectionError("BadNotReadable")
        return self.values.get(node_id, 0.0)

    async def create_subscription(self, handler, publishing_interval=1000.0):
        self.calls.append("create_subscription")
        self.subscription = FakeSubscription(handler)
        return self.subscription

    async def monitor(self, subscription, node_id, sampling_interval, queue_size, discard_oldest):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.monitor_delay)
            if node_id in self.monitor_failures:
                raise ConnectionError("BadTooManyMonitoredItems")
            self.monitored.append(node_id)
            return len(self.monitored)
        finally:
            self.in_flight -= 1

    async def delete_subscription(self, subscription):
        self.calls.append("delete_subscription")
        subscription.deleted = True


class FakeNode:
    def __init__(self, node_id: str):
        self.nodeid = self
        self._id = node_id

    def to_string(self):
        return self._id


# =============================================================================
# Store / sink
# =============================================================================


class FakeStore:
    """In-memory store with the TimescaleStore interface."""

    def __init__(self, fail_times: int = 0):
        self.points: List[TimeSeriesPoint] = []
        self.fail_times = fail_times
        self.write_calls = 0
        self.closed = 0
        self.schema_calls = 0
        self.online = True

    def ensure_schema(self):
        self.schema_calls += 1

    def write_points(self, points):
        self.write_calls += 1
        if self.fail_times:
            self.fail_times -= 1
            raise StoreError("connection refused")
        batch = list(points)
        self.points.extend(batch)
        return len(batch)

    def _rows(self):
        for p in self.points:
            yield StoredRow(time=p.timestamp, measurement=p.measurement, node_id=p.node_id,
                            value=p.value, tags=dict(p.tags))

    def query(self, measurement, tags, start, stop, limit=None, descending=False):
        rows = [
            r for r in self._rows()
            if r.measurement == measurement
            and start <= r.time <= stop
            and all(r.tags.get(k) == v for k, v in (tags or {}).items())
        ]
        rows.sort(key=lambda r: r.time, reverse=descending)
        return rows[:limit] if limit is not None else rows

    def latest(self, measurement, since, node_id=None):
        newest: Dict[str, StoredRow] = {}
        for r in self._rows():
            if r.measurement != measurement or r.time < since:
                continue
            if node_id is not None and r.node_id != node_id:
                continue
            if r.node_id not in newest or r.time > newest[r.node_id].time:
                newest[r.node_id] = r
        return list(newest.values())

    def ping(self):
        return self.online

    def close(self):
        self.closed += 1


class RecordingSink:
    """Sink double that keeps every point and records lifecycle calls."""

    def __init__(self, store=None):
        self.store = store
        self.points: List[TimeSeriesPoint] = []
        self.calls: List[str] = []
        self.closed = False

    @property
    def stats(self):
        return SinkStats(written=len(self.points))

    def start(self):
        self.calls.append("start")

    def write_point(self, point):
        if self.closed:
            return False
        self.points.append(point)
        return True

    def flush(self):
        self.calls.append("flush")
        return 0

    def close(self):
        self.calls.append("close")
        self.closed = True


def make_point(node_id: str, value: float, when: datetime, measurement: str = "solar_data") -> TimeSeriesPoint:
    return TimeSeriesPoint(
        measurement=measurement,
        tags={"location": "Ranna", "nodeId": node_id, "description": node_id},
        fields={"value": value},
        timestamp=when,
    )


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with no delays and every file under tmp_path."""
    return replace(
        Settings(),
        stagger_delay=0.0,
        batch_delay=0.0,
        heartbeat_file=tmp_path / "heartbeat.txt",
        lock_file=tmp_path / "ingest.lock",
        manifest_file=tmp_path / "discoveredVariables.json",
        catalog_file=tmp_path / "data_points.json",
        backup_dir=tmp_path / "backups",
        shutdown_timeout=5.0,
        status_log_interval=60.0,
    )


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def now() -> datetime:
    return datetime(2025, 3, 14, 6, 30, 0, tzinfo=timezone.utc)
