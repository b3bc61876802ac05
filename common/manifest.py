"""Discovery manifest: the `[{"nodeId", "name"}]` list written once per ingestion run."""
import json
import os
import tempfile
from pathlib import Path
from typing import Dict, Iterable, List

from common.models import VariableNode


def write_manifest(path: Path, nodes: Iterable[VariableNode]) -> int:
    """Overwrite the manifest with the discovered nodes, in discovery order."""
    payload = [{"nodeId": n.node_id, "name": n.name} for n in nodes]
    directory = path.parent if str(path.parent) else Path(".")
    directory.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=".manifest-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    return len(payload)


def read_manifest(path: Path) -> List[VariableNode]:
    with open(path, encoding="utf-8") as f:
        raw = json.load(f)
    return [VariableNode(node_id=item["nodeId"], name=item.get("name") or "N/A") for item in raw]


def name_map(path: Path) -> Dict[str, str]:
    """nodeId -> friendly name, or {} when no manifest has been written yet."""
    if not path.exists():
        return {}
    return {n.node_id: n.name for n in read_manifest(path)}
