import asyncio
import logging
import os
import random
from typing import Dict, List, Optional

from asyncua import Node, Server, ua

APP_NAME = "Meter Field OPC UA Simulator"
ENDPOINT = os.getenv("SIMULATOR_ENDPOINT", "opc.tcp://0.0.0.0:4841")
NAMESPACE_URI = "urn:example:meter-field"

# (name, initial value, variant type, id offset within a meter block)
METER_POINTS = [
    ("L1PhaseVoltage", 2301, ua.VariantType.Int32, 0),
    ("L1Current", 15230, ua.VariantType.Int32, 1),
    ("ActivePower", 1250.0, ua.VariantType.Double, 2),
    ("BreakerClosed", True, ua.VariantType.Boolean, 3),
]
DIAGNOSTIC_POINTS = [
    ("CabinetTemperature", 31.5, ua.VariantType.Double, 4),
    ("Status", "Online", ua.VariantType.String, 5),
]
BLOCK_SIZE = 10


class MeterSimulator:
    """
    OPC UA server with a small meter field.

    Meters/MeterNN/<point> and Meters/MeterNN/Diagnostics/<point> are numeric
    ns=<idx>;i=<1000 + block> variables; Meters/Firmware sits outside that range.
    """

    def __init__(self, endpoint: str = ENDPOINT, meters: int = 2, first_id: int = 1000):
        self.endpoint = endpoint
        self.meters = meters
        self.first_id = first_id
        self.server: Optional[Server] = None
        self.idx: int = 0
        self.nodes: Dict[str, Node] = {}

    async def _add(self, parent: Node, identifier: int, name: str, value, vtype: ua.VariantType) -> Node:
        node = await parent.add_variable(ua.NodeId(identifier, self.idx), name, value, varianttype=vtype)
        await node.set_writable()
        self.nodes[node.nodeid.to_string()] = node
        return node

    async def init(self) -> None:
        self.server = Server()
        await self.server.init()
        self.server.set_endpoint(self.endpoint)
        self.server.set_server_name(APP_NAME)
        self.server.set_security_policy([ua.SecurityPolicyType.NoSecurity])
        self.idx = await self.server.register_namespace(NAMESPACE_URI)

        objects = self.server.nodes.objects
        root = await objects.add_object(ua.NodeId(100, self.idx), "Meters")
        await self._add(root, 9001, "Firmware", "v2.4.1", ua.VariantType.String)

        for m in range(1, self.meters + 1):
            base = self.first_id + (m - 1) * BLOCK_SIZE
            meter = await root.add_object(ua.NodeId(100 + m, self.idx), f"Meter{m:02d}")
            for name, value, vtype, offset in METER_POINTS:
                await self._add(meter, base + offset, f"{m:02d}_{name}", value, vtype)
            diagnostics = await meter.add_object(ua.NodeId(200 + m, self.idx), "Diagnostics")
            for name, value, vtype, offset in DIAGNOSTIC_POINTS:
                await self._add(diagnostics, base + offset, f"{m:02d}_{name}", value, vtype)

    @property
    def variable_ids(self) -> List[str]:
        return list(self.nodes)

    async def start(self) -> None:
        if self.server is None:
            await self.init()
        await self.server.start()
        logging.info(f"OPC UA Server '{APP_NAME}' listening on {self.endpoint}")

    async def stop(self) -> None:
        if self.server is not None:
            await self.server.stop()
            self.server = None

    async def tick(self) -> None:
        for node in self.nodes.values():
            vtype = await node.read_data_type_as_variant_type()
            value = await node.read_value()
            if vtype == ua.VariantType.Double:
                value = value + random.uniform(-0.5, 0.5)
            elif vtype == ua.VariantType.Int32:
                value = max(0, value + random.randint(-5, 5))
            elif vtype == ua.VariantType.Boolean:
                if random.random() < 0.02:
                    value = not value
            else:
                continue
            await node.write_value(ua.Variant(value, vtype))

    async def run(self) -> None:
        await self.start()
        try:
            while True:
                await asyncio.sleep(1.0)
                await self.tick()
        finally:
            await self.stop()


async def run_simulator():
    logging.basicConfig(level=logging.INFO)
    simulator = MeterSimulator()
    try:
        await simulator.run()
    except Exception as e:
        logging.error(f"Uncaught exception in server main loop: {e}", exc_info=True)


def main():
    asyncio.run(run_simulator())


if __name__ == "__main__":
    main()
