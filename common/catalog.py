"""
Static catalog of known data points.

The catalog is a JSON list of entries keyed by `nodeId`. It enriches stored
points with a human description and tells the read API how to scale raw values.
"""
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


def create_id(name: str) -> str:
    """Kebab-case identifier derived from a label."""
    if not isinstance(name, str) or not name:
        return ""
    slug = name.lower()
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"[^a-z0-9-_]+", "", slug)
    slug = slug.strip("-")
    return re.sub(r"-{2,}", "-", slug)


@dataclass(frozen=True)
class NodeMetadata:
    node_id: str
    description: str
    device_tag: str = ""
    unit: str = ""
    scale_factor: float = 1.0
    precision: Optional[int] = None
    label: str = ""
    name: str = ""
    id: str = ""
    category: str = ""
    phase: Optional[str] = None
    data_type: str = ""
    is_writable: bool = False

    def scale(self, raw: float) -> float:
        value = raw * self.scale_factor
        if self.precision is not None:
            value = round(value, self.precision)
        return value

    @classmethod
    def from_dict(cls, entry: dict) -> "NodeMetadata":
        label = entry.get("label", "")
        name = entry.get("name", label)
        factor = entry.get("factor", entry.get("scaleFactor", 1))
        return cls(
            node_id=entry["nodeId"],
            description=entry.get("description") or name or entry["nodeId"],
            device_tag=entry.get("deviceTag", entry.get("category", "")),
            unit=entry.get("unit", ""),
            scale_factor=float(factor if factor is not None else 1),
            precision=entry.get("precision"),
            label=label,
            name=name,
            id=entry.get("id") or create_id(label or name),
            category=entry.get("category", ""),
            phase=entry.get("phase"),
            data_type=entry.get("dataType", ""),
            is_writable=bool(entry.get("isWritable", False)),
        )


class Catalog:
    """Read-only lookup of NodeMetadata by node id."""

    def __init__(self, entries: Iterable[NodeMetadata] = ()):
        self._by_id: Dict[str, NodeMetadata] = {m.node_id: m for m in entries}

    def __len__(self):
        return len(self._by_id)

    def __contains__(self, node_id):
        return node_id in self._by_id

    def get(self, node_id: str) -> Optional[NodeMetadata]:
        return self._by_id.get(node_id)

    def all(self) -> List[NodeMetadata]:
        return list(self._by_id.values())

    def describe(self, node_id: str, fallback: Optional[str] = None) -> str:
        meta = self._by_id.get(node_id)
        if meta and meta.description:
            return meta.description
        return fallback or node_id or "N/A"


def load_catalog(path: Path) -> Catalog:
    """Load the catalog file. A missing file yields an empty catalog."""
    if not path.exists():
        logger.warning(f"Catalog file {path} not found, descriptions fall back to browse names")
        return Catalog()
    with open(path, encoding="utf-8") as f:
        raw = json.load(f)
    entries = []
    for entry in raw:
        if "nodeId" not in entry:
            logger.warning(f"Skipping catalog entry without nodeId: {entry}")
            continue
        entries.append(NodeMetadata.from_dict(entry))
    logger.info(f"Loaded {len(entries)} catalog entries from {path}")
    return Catalog(entries)
