"""
Batched subscription engine.

Every discovered node gets one initial read and one monitored item on a shared
OPC UA subscription. Setup runs batch by batch with a small stagger between task
starts, a pause between batches, and one semaphore bounding in-flight setup
tasks across the whole engine. A node that fails is logged and recorded; the
rest carry on.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from common.catalog import Catalog
from common.config import Settings
from common.models import TimeSeriesPoint, VariableNode, is_numeric_value

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionHandle:
    node_id: str
    description: str
    server_handle: Optional[int] = None


class SubscriptionRegistry:
    """nodeId -> SubscriptionHandle for every live monitored item."""

    def __init__(self):
        self._handles: Dict[str, SubscriptionHandle] = {}

    def register(self, handle: SubscriptionHandle) -> None:
        self._handles[handle.node_id] = handle

    def unregister(self, node_id: str) -> None:
        self._handles.pop(node_id, None)

    def get(self, node_id: str) -> Optional[SubscriptionHandle]:
        return self._handles.get(node_id)

    def node_ids(self) -> List[str]:
        return list(self._handles)

    def clear(self) -> None:
        self._handles.clear()

    def __len__(self):
        return len(self._handles)

    def __contains__(self, node_id):
        return node_id in self._handles


@dataclass
class SubscriptionReport:
    subscribed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    read_failures: Dict[str, str] = field(default_factory=dict)
    batches: List[int] = field(default_factory=list)

    @property
    def accounted(self) -> int:
        return len(self.subscribed) + len(self.failed)


@dataclass
class EngineStats:
    in_flight: int = 0
    max_in_flight: int = 0
    batch_delays: int = 0
    points_emitted: int = 0
    dropped_values: int = 0


class ChangeHandler:
    """Receives asyncua data change notifications and forwards numeric values to the sink."""

    def __init__(self, registry: SubscriptionRegistry, sink, measurement: str, default_tags: Dict[str, str], stats: EngineStats):
        self.registry = registry
        self.sink = sink
        self.measurement = measurement
        self.default_tags = default_tags
        self.stats = stats

    def datachange_notification(self, node, val, data):
        try:
            node_id = node.nodeid.to_string()
            handle = self.registry.get(node_id)
            if handle is None:
                logger.debug(f"Notification for unregistered node {node_id} ignored")
                return
            self.emit(node_id, handle.description, val)
        except Exception as e:
            logger.error(f"Error processing data change: {e}")

    def status_change_notification(self, status):
        logger.warning(f"Subscription status changed: {status}")

    def emit(self, node_id: str, description: str, value: Any, timestamp: Optional[datetime] = None) -> bool:
        """Build and buffer one point. Non-numeric values are dropped."""
        if not is_numeric_value(value):
            self.stats.dropped_values += 1
            logger.debug(f"Dropping non-numeric value {value!r} for {node_id}")
            return False
        tags = dict(self.default_tags)
        tags["nodeId"] = node_id
        tags["description"] = description
        point = TimeSeriesPoint(
            measurement=self.measurement,
            tags=tags,
            fields={"value": float(value)},
            timestamp=timestamp or datetime.now(timezone.utc),
        )
        if self.sink.write_point(point):
            self.stats.points_emitted += 1
            return True
        return False


class SubscriptionEngine:
    def __init__(self, session, sink, catalog: Catalog, settings: Settings, sleep=asyncio.sleep):
        self.session = session
        self.sink = sink
        self.catalog = catalog
        self.settings = settings
        self.registry = SubscriptionRegistry()
        self.stats = EngineStats()
        self.handler = ChangeHandler(
            self.registry, sink, settings.measurement, settings.default_tags, self.stats
        )
        self.subscription = None
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._sleep = sleep

    async def subscribe_all(self, nodes: List[VariableNode]) -> SubscriptionReport:
        """Set up monitoring for every node. Failures of the shared subscription itself are fatal."""
        report = SubscriptionReport()
        if self.subscription is None:
            self.subscription = await self.session.create_subscription(
                self.handler, self.settings.publishing_interval
            )

        batch_size = self.settings.batch_size
        total_batches = (len(nodes) + batch_size - 1) // batch_size
        for number, start in enumerate(range(0, len(nodes), batch_size), start=1):
            batch = nodes[start:start + batch_size]
            logger.info(f"Subscribing batch {number}/{total_batches} ({len(batch)} items)...")
            await asyncio.gather(
                *(self._setup_node(node, index, report) for index, node in enumerate(batch))
            )
            report.batches.append(len(batch))
            logger.info(f"Finished batch {number}/{total_batches}")
            if start + batch_size < len(nodes):
                self.stats.batch_delays += 1
                await self._sleep(self.settings.batch_delay)

        logger.info(
            f"Subscriptions ready: {len(report.subscribed)} subscribed, {len(report.failed)} failed, "
            f"{len(report.read_failures)} initial reads failed"
        )
        return report

    async def _setup_node(self, node: VariableNode, index: int, report: SubscriptionReport) -> None:
        if index and self.settings.stagger_delay:
            await self._sleep(index * self.settings.stagger_delay)

        async with self._semaphore:
            self.stats.in_flight += 1
            self.stats.max_in_flight = max(self.stats.max_in_flight, self.stats.in_flight)
            try:
                description = self.catalog.describe(node.node_id, node.name)
                await self._initial_read(node, description, report)

                handle = SubscriptionHandle(node_id=node.node_id, description=description)
                # Registered first so a notification racing the create call is not lost.
                self.registry.register(handle)
                try:
                    handle.server_handle = await self.session.monitor(
                        self.subscription,
                        node.node_id,
                        sampling_interval=self.settings.sampling_interval,
                        queue_size=self.settings.queue_size,
                        discard_oldest=self.settings.discard_oldest,
                    )
                except Exception as e:
                    self.registry.unregister(node.node_id)
                    report.failed[node.node_id] = str(e) or type(e).__name__
                    logger.error(f"Failed to subscribe {node.node_id}: {e}")
                    return
                report.subscribed.append(node.node_id)
                logger.debug(f"Subscribed to {node.node_id}")
            finally:
                self.stats.in_flight -= 1

    async def _initial_read(self, node: VariableNode, description: str, report: SubscriptionReport) -> None:
        try:
            value = await self.session.read_value(node.node_id)
        except Exception as e:
            report.read_failures[node.node_id] = str(e) or type(e).__name__
            logger.warning(f"Failed initial read for {node.node_id}: {e}")
            return
        self.handler.emit(node.node_id, description, value)

    async def terminate(self) -> None:
        """Delete the shared subscription and forget every monitored item."""
        if self.subscription is not None:
            subscription = self.subscription
            self.subscription = None
            await self.session.delete_subscription(subscription)
            logger.info(f"Subscription terminated ({len(self.registry)} monitored items)")
        self.registry.clear()
