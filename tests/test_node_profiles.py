"""Tests for node_profiles module."""

import pytest

from homeops.node_profiles import NodeProfile, NodeProfileStore

PROFILES = """
nodes:
  k8s-0:
    datastore: local-nvme1
    mac_address: "00:a0:98:28:c8:83"
    cpu_affinity: 0-7,32-39
    numa_node: 0
    vmid: 200
  k8s-1:
    datastore: local-nvme2
    mac_address: "00:a0:98:1a:f3:72"
    cpu_affinity: 16-23,48-55
    numa_node: 1
    vmid: 201
"""


@pytest.fixture
def profile_file(tmp_path):
    path = tmp_path / "nodes.yaml"
    path.write_text(PROFILES)
    return path


def test_load(profile_file):
    """Test loading profiles from YAML."""
    store = NodeProfileStore.load(profile_file)

    assert len(store) == 2
    assert "k8s-0" in store
    profile = store.get("k8s-1")
    assert profile == NodeProfile(
        name="k8s-1",
        datastore="local-nvme2",
        mac_address="00:a0:98:1a:f3:72",
        cpu_affinity="16-23,48-55",
        numa_node=1,
        vmid=201,
    )


def test_load_missing_file(tmp_path):
    """Test a missing file raises FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        NodeProfileStore.load(tmp_path / "absent.yaml")


@pytest.mark.parametrize("content", ["", "nodes:\n", "- just\n- a list\n", "nodes: [unclosed\n"])
def test_load_invalid_document(tmp_path, content):
    """Test empty or malformed documents raise ValueError."""
    path = tmp_path / "nodes.yaml"
    path.write_text(content)

    with pytest.raises(ValueError):
        NodeProfileStore.load(path)


def test_unknown_field():
    """Test typos in profile fields are reported."""
    with pytest.raises(ValueError, match="datastor"):
        NodeProfile.from_dict("k8s-0", {"datastor": "local-nvme1"})


def test_apply_fills_empty_fields(profile_file, make_request):
    """Test profile values fill fields the request leaves empty."""
    store = NodeProfileStore.load(profile_file)
    request = make_request(name="k8s-0", datastore="")

    pinned = store.apply(request)

    assert pinned.datastore == "local-nvme1"
    assert pinned.mac_address == "00:a0:98:28:c8:83"
    assert pinned.cpu_affinity == "0-7,32-39"
    assert pinned.numa_node == 0
    assert pinned.vmid == 200
    assert request.datastore == ""
    assert request.mac_address is None


def test_apply_request_values_win(profile_file, make_request):
    """Test explicit request values are never overwritten."""
    store = NodeProfileStore.load(profile_file)

    pinned = store.apply(make_request(name="k8s-0", datastore="fast", numa_node=1))

    assert pinned.datastore == "fast"
    assert pinned.numa_node == 1
    assert pinned.vmid == 200


def test_apply_unknown_name(profile_file, make_request):
    """Test requests without a profile pass through unchanged."""
    store = NodeProfileStore.load(profile_file)
    request = make_request(name="other")

    assert store.apply(request) is request
