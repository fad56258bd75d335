import tarfile
from pathlib import Path

import pytest
import yaml

from offlinectl.config import OfflineConfig
from offlinectl.modules.bundler import GUIDE_NAME, ArtifactBundler
from offlinectl.modules.capability import DockerProbe
from offlinectl.modules.errors import BundleError, CommandError
from offlinectl.modules.models import BundleComponent, InterpreterInfo
from offlinectl.modules.retry import RetryExecutor, RetryPolicy
from offlinectl.modules.utils import CommandResult


class FakeShell:
    """Plays the external tools the bundler drives, writing their outputs to disk."""

    def __init__(self, config, os_root, images=("docker.io/library/nginx:1.27.0",), files=("https://dl/k",),
                 failing=()):
        self.workdir = Path(config.workdir)
        self.source = self.workdir / "kubespray"
        self.offline = self.source / "contrib" / "offline"
        self.os_root = Path(os_root)
        self.images = images
        self.files = files
        self.failing = failing
        self.calls = []

    def _seed_source(self):
        (self.offline / "temp").mkdir(parents=True, exist_ok=True)
        (self.offline / "generate_list.sh").write_text("#!/bin/bash\n")
        (self.source / "requirements.txt").write_text("ansible\n")

    def __call__(self, argv, cwd=None, env=None, check=True, timeout=None, input_text=None):
        argv = [str(a) for a in argv]
        line = " ".join(argv)
        self.calls.append(line)
        if any(pattern in line for pattern in self.failing):
            if check:
                raise CommandError(argv, 1, "simulated failure")
            return CommandResult(argv, 1, "", "simulated failure")

        if argv[:2] == ['git', 'clone']:
            self._seed_source()
        elif argv[1:3] == ['-m', 'venv']:
            (Path(argv[3]) / "bin").mkdir(parents=True)
        elif 'download' in argv and argv[0].endswith('pip'):
            (self.workdir / "pip" / "ansible-10.0.0-py3-none-any.whl").write_text("wheel")
        elif 'generate_list.sh' in line:
            (self.offline / "temp" / "images.list").write_text("\n".join(self.images) + "\n")
            (self.offline / "temp" / "files.list").write_text("\n".join(self.files) + "\n")
        elif 'manage-offline-container-images.sh' in line:
            (self.offline / "container-images.tar.gz").write_bytes(b"images")
        elif argv[:2] == ['docker', 'save']:
            Path(argv[3]).write_bytes(b"registry")
        elif 'manage-offline-files.sh' in line:
            (self.offline / "offline-files" / "dl").mkdir(parents=True, exist_ok=True)
            (self.offline / "offline-files" / "dl" / "kubeadm").write_bytes(b"bin")
        elif argv[:2] == ['apt-get', 'install']:
            cache = self.os_root / "var" / "cache" / "apt" / "archives"
            cache.mkdir(parents=True, exist_ok=True)
            (cache / "socat_1.7_amd64.deb").write_bytes(b"deb")
        return CommandResult(argv, 0, "", "")


@pytest.fixture
def config(tmp_path):
    return OfflineConfig(workdir=tmp_path / "work")


@pytest.fixture
def os_root(tmp_path):
    root = tmp_path / "root"
    (root / "etc").mkdir(parents=True)
    return root


def make_bundler(config, shell, os_root, which=lambda name: None):
    return ArtifactBundler(
        config,
        interpreter=InterpreterInfo(command='python3.12'),
        runtime_probe=DockerProbe(),
        retry=RetryExecutor(RetryPolicy(max_attempts=2), sleep=lambda _: None),
        runner=shell,
        which=which,
        os_root=os_root,
    )


def archive_names(archive):
    with tarfile.open(archive, "r:gz") as tar:
        return set(tar.getnames())


def test_full_prepare(config, os_root):
    shell = FakeShell(config, os_root)
    bundle = make_bundler(config, shell, os_root).prepare()

    assert bundle.sealed
    assert bundle.archive == config.workdir / "kubespray-offline-v2.29.0.tar.gz"
    assert bundle.components == [
        BundleComponent.SOURCE, BundleComponent.RUNTIME_DEPS, BundleComponent.IMAGES,
        BundleComponent.REGISTRY_SNAPSHOT, BundleComponent.FILES, BundleComponent.DOCS,
    ]

    names = archive_names(bundle.archive)
    assert "bundle.yaml" in names
    assert GUIDE_NAME in names
    assert "pip/ansible-10.0.0-py3-none-any.whl" in names
    assert "kubespray/contrib/offline/container-images.tar.gz" in names
    assert "kubespray/contrib/offline/registry-latest.tar" in names
    assert "kubespray/contrib/offline/offline-files/dl/kubeadm" in names

    manifest = yaml.safe_load((config.workdir / "bundle.yaml").read_text())
    assert manifest == {'version': 'v2.29.0', 'components': [c.value for c in bundle.components]}
    guide = (config.workdir / GUIDE_NAME).read_text()
    assert "1.32.9" in guide


def test_empty_image_manifest_yields_no_image_archive(config, os_root):
    shell = FakeShell(config, os_root, images=())
    bundler = make_bundler(config, shell, os_root)
    # Leftover from an earlier run must not leak into the archive
    shell._seed_source()
    (shell.offline / "container-images.tar.gz").write_bytes(b"stale")
    (shell.offline / "registry-latest.tar").write_bytes(b"stale")

    bundle = bundler.prepare()

    assert not bundle.has(BundleComponent.IMAGES)
    assert not bundle.has(BundleComponent.REGISTRY_SNAPSHOT)
    assert bundle.has(BundleComponent.FILES)
    assert not any('manage-offline-container-images.sh' in call for call in shell.calls)
    names = archive_names(bundle.archive)
    assert "kubespray/contrib/offline/container-images.tar.gz" not in names
    assert "kubespray/contrib/offline/registry-latest.tar" not in names


def test_existing_checkout_is_updated_not_recloned(config, os_root):
    shell = FakeShell(config, os_root)
    shell._seed_source()
    (config.workdir / "pip").mkdir(parents=True)
    (config.workdir / "pip" / "cached.whl").write_text("wheel")

    make_bundler(config, shell, os_root).prepare()

    assert not any(call.startswith('git clone') for call in shell.calls)
    assert 'git fetch --all' in shell.calls
    assert 'git checkout v2.29.0' in shell.calls


def test_fetch_failure_keeps_existing_checkout(config, os_root):
    shell = FakeShell(config, os_root, failing=('git fetch',))
    shell._seed_source()

    bundle = make_bundler(config, shell, os_root).prepare()

    assert bundle.has(BundleComponent.SOURCE)
    assert shell.calls.count('git fetch --all') == 2
    assert 'git pull' not in shell.calls


def test_dependency_failure_is_fatal(config, os_root):
    shell = FakeShell(config, os_root, failing=('pip download',))
    with pytest.raises(BundleError):
        make_bundler(config, shell, os_root).prepare()
    assert not any('generate_list.sh' in call for call in shell.calls)
    assert not (config.workdir / "kubespray-offline-v2.29.0.tar.gz").exists()


def test_image_packaging_failure_degrades_only_images(config, os_root):
    shell = FakeShell(config, os_root, failing=('manage-offline-container-images.sh',))
    bundle = make_bundler(config, shell, os_root).prepare()

    assert not bundle.has(BundleComponent.IMAGES)
    assert bundle.has(BundleComponent.FILES)


def test_debian_packages_are_mirrored(config, os_root):
    (os_root / "etc" / "debian_version").write_text("12.5\n")
    shell = FakeShell(config, os_root)
    bundle = make_bundler(config, shell, os_root, which=lambda name: f"/usr/bin/{name}").prepare()

    assert bundle.has(BundleComponent.OS_PACKAGES_DEB)
    assert not bundle.has(BundleComponent.OS_PACKAGES_RPM)
    assert "os-packages/deb/socat_1.7_amd64.deb" in archive_names(bundle.archive)


def test_missing_package_manager_degrades(config, os_root):
    (os_root / "etc" / "redhat-release").write_text("Rocky Linux 9\n")
    shell = FakeShell(config, os_root)
    bundle = make_bundler(config, shell, os_root).prepare()

    assert not bundle.has(BundleComponent.OS_PACKAGES_RPM)
    assert not any(call.startswith('yum') for call in shell.calls)
