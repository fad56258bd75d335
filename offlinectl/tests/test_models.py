import pytest
import yaml

from offlinectl.modules.errors import BundleError, ConfigError
from offlinectl.modules.models import (
    ArtifactBundle, BundleComponent, FleetState, FleetTopology, Node, NodeRole, NodeState, Version,
)


def test_topology_assigns_ids_control_plane_first():
    topology = FleetTopology.from_addresses(['10.0.0.5', '10.0.0.6'], ['10.0.0.1'])
    assert [(n.id, n.role, n.address) for n in topology] == [
        ('node1', NodeRole.CONTROL_PLANE, '10.0.0.5'),
        ('node2', NodeRole.CONTROL_PLANE, '10.0.0.6'),
        ('node3', NodeRole.WORKER, '10.0.0.1'),
    ]
    assert topology.groups['etcd'] == topology.groups['kube_control_plane'] == ['node1', 'node2']
    assert topology.host_entries()[2] == ('10.0.0.1', 'node3')


def test_topology_rejects_shared_address():
    with pytest.raises(ConfigError):
        FleetTopology.from_addresses(['10.0.0.1'], ['10.0.0.1'])
    with pytest.raises(ConfigError):
        FleetTopology([Node('node1', NodeRole.WORKER, '10.0.0.1'), Node('node1', NodeRole.WORKER, '10.0.0.2')])


def test_version_parse():
    assert Version.parse("Python 3.11.4") == Version(3, 11, 4)
    assert Version.parse("3.10") == Version(3, 10, 0)
    with pytest.raises(ValueError):
        Version.parse("unknown")


def test_bundle_refuses_empty_output(tmp_path):
    bundle = ArtifactBundle("v2.29.0")
    empty = tmp_path / "empty"
    empty.mkdir()
    (tmp_path / "zero.tar").write_bytes(b"")
    (tmp_path / "images.tar").write_bytes(b"data")

    assert not bundle.include(BundleComponent.RUNTIME_DEPS, empty)
    assert not bundle.include(BundleComponent.IMAGES, tmp_path / "zero.tar")
    assert not bundle.include(BundleComponent.FILES, tmp_path / "missing")
    assert bundle.include(BundleComponent.IMAGES, tmp_path / "images.tar")
    assert bundle.components == [BundleComponent.IMAGES]


def test_bundle_is_immutable_once_sealed(tmp_path):
    (tmp_path / "guide.md").write_text("guide")
    bundle = ArtifactBundle("v2.29.0")
    bundle.include(BundleComponent.DOCS, tmp_path / "guide.md")
    bundle.seal(tmp_path / bundle.archive_name)
    with pytest.raises(BundleError):
        bundle.include(BundleComponent.DOCS, tmp_path / "guide.md")


def test_manifest_round_trip(tmp_path):
    (tmp_path / "guide.md").write_text("guide")
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "README").write_text("x")
    bundle = ArtifactBundle("v2.29.0")
    bundle.include(BundleComponent.SOURCE, tmp_path / "src")
    bundle.include(BundleComponent.DOCS, tmp_path / "guide.md")

    (tmp_path / "bundle.yaml").write_text(yaml.safe_dump(bundle.manifest()))
    loaded = ArtifactBundle.load_manifest(tmp_path / "bundle.yaml")
    assert loaded.version == "v2.29.0"
    assert loaded.components == [BundleComponent.SOURCE, BundleComponent.DOCS]


def test_fleet_state_node_state(tmp_path):
    state = FleetState()
    stages = ['trust', 'distribute']
    assert state.node_state('node1', stages) == NodeState.NOT_STARTED
    state.mark('node1', 'trust', NodeState.CONVERGED)
    assert state.node_state('node1', stages) == NodeState.PARTIAL
    state.mark('node1', 'distribute', NodeState.CONVERGED)
    assert state.node_state('node1', stages) == NodeState.CONVERGED
    state.mark('node2', 'trust', NodeState.FAILED, "timeout")
    assert state.node_state('node2', stages) == NodeState.FAILED

    path = tmp_path / "state" / "fleet-state.json"
    state.save(path)
    loaded = FleetState.load(path)
    assert loaded.stage_state('node1', 'distribute') == NodeState.CONVERGED
    assert loaded.errors == {'node2': 'timeout'}


def test_fleet_state_ignores_corrupt_file(tmp_path):
    path = tmp_path / "fleet-state.json"
    path.write_text("{not json")
    assert FleetState.load(path).stages == {}
