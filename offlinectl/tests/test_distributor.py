import tarfile

import pytest
import yaml

from offlinectl.config import OfflineConfig
from offlinectl.modules.distributor import BundleDistributor
from offlinectl.modules.errors import BundleError, TransferError
from offlinectl.modules.models import BundleComponent, FleetTopology
from offlinectl.modules.retry import RetryExecutor, RetryPolicy


class FakeRemote:
    def __init__(self, fail_put=0):
        self.commands = []
        self.uploads = []
        self.fail_put = fail_put

    def execute(self, command, timeout=None, input_text=None):
        self.commands.append(command)
        return (0, '', '')

    def put(self, local, remote):
        if self.fail_put:
            self.fail_put -= 1
            raise TransferError("scp: connection reset")
        self.uploads.append((local, remote))


@pytest.fixture
def config(tmp_path):
    return OfflineConfig(workdir=tmp_path / "work", fleet={'control_plane': ['10.0.0.1']})


@pytest.fixture
def archive(config, tmp_path):
    staging = tmp_path / "staging"
    (staging / "kubespray").mkdir(parents=True)
    (staging / "kubespray" / "cluster.yml").write_text("---\n")
    (staging / "bundle.yaml").write_text(yaml.safe_dump({'version': 'v2.29.0', 'components': ['source', 'images']}))
    config.workdir.mkdir(parents=True)
    with tarfile.open(config.archive_path, "w:gz") as tar:
        tar.add(str(staging / "kubespray"), arcname="kubespray")
        tar.add(str(staging / "bundle.yaml"), arcname="bundle.yaml")
    return config.archive_path


def make_distributor(config, remote):
    return BundleDistributor(config, lambda node: remote, RetryExecutor(RetryPolicy(max_attempts=3), sleep=lambda _: None))


def test_unpack_local_reads_manifest(config, archive):
    bundle = make_distributor(config, FakeRemote()).unpack_local()
    assert bundle.version == 'v2.29.0'
    assert bundle.components == [BundleComponent.SOURCE, BundleComponent.IMAGES]
    assert (config.workdir / "kubespray" / "cluster.yml").exists()
    assert bundle.archive == archive


def test_unpack_local_missing_archive(config):
    with pytest.raises(BundleError):
        make_distributor(config, FakeRemote()).unpack_local()


def test_distribute_copies_and_extracts(config, archive):
    remote = FakeRemote()
    distributor = make_distributor(config, remote)
    bundle = distributor.unpack_local()
    node = FleetTopology.from_addresses(['10.0.0.1']).nodes[0]

    distributor.distribute(bundle, node)

    assert remote.uploads == [(str(archive), f"/root/kubespray-offline/{archive.name}")]
    assert remote.commands == [
        'mkdir -p /root/kubespray-offline',
        f'tar xzf /root/kubespray-offline/{archive.name} -C /root/kubespray-offline',
    ]


def test_transient_copy_failure_is_retried(config, archive):
    remote = FakeRemote(fail_put=2)
    distributor = make_distributor(config, remote)
    distributor.distribute(distributor.unpack_local(), FleetTopology.from_addresses(['10.0.0.1']).nodes[0])
    assert len(remote.uploads) == 1


def test_persistent_copy_failure(config, archive):
    remote = FakeRemote(fail_put=5)
    distributor = make_distributor(config, remote)
    with pytest.raises(TransferError):
        distributor.distribute(distributor.unpack_local(), FleetTopology.from_addresses(['10.0.0.1']).nodes[0])
