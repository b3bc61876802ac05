"""Catalog loading and the discovery manifest."""
import json

from common.catalog import NodeMetadata, create_id, load_catalog
from common.manifest import name_map, read_manifest, write_manifest
from common.models import VariableNode, is_numeric_value, split_numeric_node_id


def test_load_catalog_reads_entries_and_skips_bad_ones(tmp_path):
    path = tmp_path / "data_points.json"
    path.write_text(json.dumps([
        {"nodeId": "ns=2;i=1000", "label": "Meter 01 L1 Phase Voltage", "unit": "V", "factor": 0.1, "precision": 1},
        {"label": "no node id"},
        {"nodeId": "ns=2;i=1002", "name": "Active power"},
    ]))

    catalog = load_catalog(path)

    assert len(catalog) == 2
    voltage = catalog.get("ns=2;i=1000")
    assert voltage.id == "meter-01-l1-phase-voltage"
    assert voltage.description == "Meter 01 L1 Phase Voltage"
    assert voltage.scale(2301) == 230.1
    assert catalog.describe("ns=2;i=1002") == "Active power"


def test_missing_catalog_is_empty(tmp_path):
    catalog = load_catalog(tmp_path / "absent.json")

    assert len(catalog) == 0
    assert catalog.describe("ns=2;i=1000", "01_L1PhaseVoltage") == "01_L1PhaseVoltage"
    assert catalog.describe("ns=2;i=1000") == "ns=2;i=1000"


def test_scale_without_precision_keeps_full_value():
    meta = NodeMetadata(node_id="ns=2;i=1001", description="L1 current", scale_factor=0.5)

    assert meta.scale(3) == 1.5


def test_create_id():
    assert create_id("Meter 01  L1/Current (A)") == "meter-01-l1current-a"
    assert create_id("") == ""


def test_manifest_round_trip_keeps_discovery_order(tmp_path):
    path = tmp_path / "out" / "discoveredVariables.json"
    nodes = [VariableNode("ns=2;i=1010", "02_L1PhaseVoltage"), VariableNode("ns=2;i=1000", "01_L1PhaseVoltage")]

    assert write_manifest(path, nodes) == 2

    assert json.loads(path.read_text()) == [
        {"nodeId": "ns=2;i=1010", "name": "02_L1PhaseVoltage"},
        {"nodeId": "ns=2;i=1000", "name": "01_L1PhaseVoltage"},
    ]
    assert read_manifest(path) == nodes
    assert list(path.parent.glob(".manifest-*")) == []


def test_manifest_is_overwritten(tmp_path):
    path = tmp_path / "discoveredVariables.json"
    write_manifest(path, [VariableNode("ns=2;i=1000", "a"), VariableNode("ns=2;i=1001", "b")])
    write_manifest(path, [VariableNode("ns=2;i=1002", "c")])

    assert name_map(path) == {"ns=2;i=1002": "c"}


def test_name_map_without_manifest(tmp_path):
    assert name_map(tmp_path / "absent.json") == {}


def test_split_numeric_node_id():
    assert split_numeric_node_id("ns=2;i=1000") == (2, 1000)
    assert split_numeric_node_id("ns=2;s=Meter01") is None


def test_is_numeric_value():
    assert is_numeric_value(1)
    assert is_numeric_value(2.5)
    assert is_numeric_value(False)
    assert not is_numeric_value("12")
    assert not is_numeric_value(None)
    assert not is_numeric_value([1, 2])
