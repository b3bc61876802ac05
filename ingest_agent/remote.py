"""
Thin adapter over asyncua.Client.

This is the whole remote surface the historian depends on: connect, paginated
browse, single-node read and write, subscriptions with monitored items, and
orderly session/transport shutdown. Browse results come back as plain values so
discovery and the subscription engine can be tested without a server.
"""
import itertools
import logging
from dataclasses import dataclass
from typing import Any, List, Optional

from asyncua import Client, ua

logger = logging.getLogger(__name__)

VARIABLE = "variable"
OBJECT = "object"
OBJECT_TYPE = "object_type"
OTHER = "other"

_NODE_CLASSES = {
    ua.NodeClass.Variable: VARIABLE,
    ua.NodeClass.Object: OBJECT,
    ua.NodeClass.ObjectType: OBJECT_TYPE,
}


@dataclass(frozen=True)
class Reference:
    node_id: str
    name: str
    node_class: str


@dataclass(frozen=True)
class BrowsePage:
    references: List[Reference]
    continuation: Optional[bytes] = None


class RemoteSession:
    """One OPC UA connection + session."""

    def __init__(self, endpoint: str, timeout: float = 30.0):
        self.endpoint = endpoint
        self.client = Client(url=endpoint, timeout=timeout)
        self.connected = False
        self._handles = itertools.count(1)

    # ------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------

    async def connect(self) -> None:
        """Open the transport and create + activate a session."""
        await self.client.connect()
        self.connected = True
        logger.info(f"Connected to OPC UA server at {self.endpoint}")

    async def close_session(self) -> None:
        await self.client.close_session()
        logger.info("OPC UA session closed")

    async def disconnect(self) -> None:
        try:
            await self.client.close_secure_channel()
        finally:
            self.client.disconnect_socket()
            self.connected = False
        logger.info("OPC UA transport disconnected")

    async def check_alive(self) -> None:
        """Read the server state; raises if the session no longer answers."""
        node = self.client.get_node(ua.NodeId(ua.ObjectIds.Server_ServerStatus_State))
        await node.read_value()

    # ------------------------------------------------------------
    # browse
    # ------------------------------------------------------------

    async def browse(self, node_id: str, page_size: int = 0) -> BrowsePage:
        desc = ua.BrowseDescription()
        desc.NodeId = ua.NodeId.from_string(node_id)
        desc.BrowseDirection = ua.BrowseDirection.Forward
        desc.ReferenceTypeId = ua.NodeId(ua.ObjectIds.HierarchicalReferences)
        desc.IncludeSubtypes = True
        desc.NodeClassMask = 0
        desc.ResultMask = ua.BrowseResultMask.All

        params = ua.BrowseParameters()
        params.View = ua.ViewDescription()
        params.RequestedMaxReferencesPerNode = page_size
        params.NodesToBrowse.append(desc)

        results = await self.client.uaclient.browse(params)
        return self._to_page(results[0])

    async def browse_next(self, continuation: bytes) -> BrowsePage:
        params = ua.BrowseNextParameters()
        params.ReleaseContinuationPoints = False
        params.ContinuationPoints = [continuation]
        results = await self.client.uaclient.browse_next(params)
        return self._to_page(results[0])

    @staticmethod
    def _to_page(result) -> BrowsePage:
        result.StatusCode.check()
        references = [
            Reference(
                node_id=ref.NodeId.to_string(),
                name=ref.BrowseName.Name,
                node_class=_NODE_CLASSES.get(ref.NodeClass, OTHER),
            )
            for ref in result.References
        ]
        return BrowsePage(references=references, continuation=result.ContinuationPoint or None)

    # ------------------------------------------------------------
    # read / write
    # ------------------------------------------------------------

    async def read_value(self, node_id: str) -> Any:
        return await self.client.get_node(node_id).read_value()

    async def read_variant_type(self, node_id: str) -> ua.VariantType:
        return await self.client.get_node(node_id).read_data_type_as_variant_type()

    async def write_value(self, node_id: str, value: Any, variant_type: ua.VariantType) -> None:
        node = self.client.get_node(node_id)
        await node.write_value(ua.DataValue(ua.Variant(value, variant_type)))

    # ------------------------------------------------------------
    # subscriptions
    # ------------------------------------------------------------

    async def create_subscription(self, handler, publishing_interval: float = 1000.0):
        params = ua.CreateSubscriptionParameters()
        params.RequestedPublishingInterval = publishing_interval
        params.RequestedLifetimeCount = 100
        params.RequestedMaxKeepAliveCount = 10
        params.MaxNotificationsPerPublish = 50
        params.PublishingEnabled = True
        params.Priority = 10
        return await self.client.create_subscription(params, handler)

    async def monitor(
        self,
        subscription,
        node_id: str,
        sampling_interval: float,
        queue_size: int,
        discard_oldest: bool,
    ) -> int:
        """Create one monitored item on the Value attribute; returns its server handle."""
        item = ua.ReadValueId()
        item.NodeId = ua.NodeId.from_string(node_id)
        item.AttributeId = ua.AttributeIds.Value

        mparams = ua.MonitoringParameters()
        # Notifications are routed by client handle, so each item needs its own.
        mparams.ClientHandle = next(self._handles)
        mparams.SamplingInterval = sampling_interval
        mparams.QueueSize = queue_size
        mparams.DiscardOldest = discard_oldest

        request = ua.MonitoredItemCreateRequest()
        request.ItemToMonitor = item
        request.MonitoringMode = ua.MonitoringMode.Reporting
        request.RequestedParameters = mparams

        results = await subscription.create_monitored_items([request])
        result = results[0]
        if isinstance(result, ua.StatusCode):
            result.check()
        return result

    async def delete_subscription(self, subscription) -> None:
        await subscription.delete()
