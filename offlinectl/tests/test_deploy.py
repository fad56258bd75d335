from types import SimpleNamespace

import pytest

from offlinectl.config import OfflineConfig
from offlinectl.modules.deploy import DeploymentCoordinator
from offlinectl.modules.errors import CommandError, DeploymentError
from offlinectl.modules.utils import CommandResult


class PlaybookRecorder:
    def __init__(self, rc=0, status='successful'):
        self.rc = rc
        self.status = status
        self.kwargs = None

    def __call__(self, **kwargs):
        self.kwargs = kwargs
        return SimpleNamespace(rc=self.rc, status=self.status)


@pytest.fixture
def config(tmp_path):
    return OfflineConfig(workdir=tmp_path)


def test_deploy_runs_cluster_playbook(config, tmp_path):
    (tmp_path / "pip").mkdir()
    calls = []
    playbook = PlaybookRecorder()
    coordinator = DeploymentCoordinator(
        config,
        runner=lambda argv, **kw: calls.append(list(argv)) or CommandResult(list(argv), 0, '', ''),
        playbook_runner=playbook,
    )

    coordinator.deploy(tmp_path / "kubespray" / "inventory" / "mycluster" / "hosts.yaml")

    assert calls == [[
        str(tmp_path / "kubespray" / "venv" / "bin" / "pip"), 'install', '--no-index',
        '--find-links', str(tmp_path / "pip"), '-r', 'requirements.txt',
    ]]
    assert playbook.kwargs['playbook'] == 'cluster.yml'
    assert playbook.kwargs['project_dir'] == str(tmp_path / "kubespray")
    assert playbook.kwargs['extravars'] == {'kube_version': '1.32.9'}
    assert playbook.kwargs['cmdline'] == '--become'
    assert playbook.kwargs['envvars']['PATH'].startswith(str(tmp_path / "kubespray" / "venv" / "bin"))
    assert playbook.kwargs['envvars']['ANSIBLE_HOST_KEY_CHECKING'] == 'False'


def test_missing_cache_is_a_warning(config, tmp_path, caplog):
    calls = []
    coordinator = DeploymentCoordinator(config, runner=lambda argv, **kw: calls.append(argv),
                                        playbook_runner=PlaybookRecorder())
    coordinator.deploy(tmp_path / "hosts.yaml", "1.31.0")
    assert calls == []
    assert any("Dependency cache" in r.getMessage() for r in caplog.records)


@pytest.mark.parametrize("rc,status", [(2, 'failed'), (0, 'canceled'), (0, 'timeout')])
def test_unsuccessful_run_is_fatal(config, tmp_path, rc, status):
    coordinator = DeploymentCoordinator(config, playbook_runner=PlaybookRecorder(rc, status))
    with pytest.raises(DeploymentError):
        coordinator.deploy(tmp_path / "hosts.yaml")


def test_offline_pip_failure_is_fatal(config, tmp_path):
    (tmp_path / "pip").mkdir()

    def failing(argv, **kwargs):
        raise CommandError(argv, 1, "No matching distribution")

    playbook = PlaybookRecorder()
    coordinator = DeploymentCoordinator(config, runner=failing, playbook_runner=playbook)
    with pytest.raises(DeploymentError):
        coordinator.deploy(tmp_path / "hosts.yaml")
    assert playbook.kwargs is None
