"""Value types passed between discovery, the subscription engine and the store."""
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

NUMERIC_NODE_ID = re.compile(r"^ns=(\d+);i=(\d+)$", re.IGNORECASE)


@dataclass(frozen=True)
class VariableNode:
    node_id: str
    name: str


@dataclass(frozen=True)
class TimeSeriesPoint:
    measurement: str
    tags: Dict[str, str]
    fields: Dict[str, float]
    timestamp: datetime

    @property
    def node_id(self) -> Optional[str]:
        return self.tags.get("nodeId")

    @property
    def value(self) -> Optional[float]:
        return self.fields.get("value")


@dataclass(frozen=True)
class StoredRow:
    """One row returned by the store's query interface."""
    time: datetime
    measurement: str
    node_id: str
    value: float
    tags: Dict[str, str] = field(default_factory=dict)


def split_numeric_node_id(node_id: str):
    """Return (namespace, identifier) for `ns=<n>;i=<id>` node ids, else None."""
    match = NUMERIC_NODE_ID.match(node_id.strip())
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def is_numeric_value(value) -> bool:
    """Only numbers and booleans become points; strings and structures are dropped."""
    if isinstance(value, bool):
        return True
    if isinstance(value, (int, float)):
        return True
    return False
