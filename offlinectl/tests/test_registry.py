import pytest
import requests

from offlinectl.config import OfflineConfig
from offlinectl.modules.capability import DockerProbe
from offlinectl.modules.errors import CommandError, RegistryError
from offlinectl.modules.models import ArtifactBundle, BundleComponent
from offlinectl.modules.registry import RegistryPublisher, nginx_tag
from offlinectl.modules.retry import RetryExecutor, RetryPolicy
from offlinectl.modules.utils import CommandResult


class FakeDocker:
    def __init__(self, containers=(), images=(), failing=()):
        self.containers = set(containers)
        self.images = set(images)
        self.failing = failing
        self.calls = []
        self.envs = []

    def __call__(self, argv, cwd=None, env=None, check=True, timeout=None, input_text=None):
        argv = [str(a) for a in argv]
        self.calls.append(argv)
        self.envs.append(env)
        rc = 0
        if any(p in " ".join(argv) for p in self.failing):
            rc = 1
        elif argv[1:3] == ['container', 'inspect']:
            rc = 0 if argv[3] in self.containers else 1
        elif argv[1:3] == ['image', 'inspect']:
            rc = 0 if argv[3] in self.images else 1
        elif argv[1] == 'run':
            self.containers.add(argv[argv.index('--name') + 1])
        if check and rc:
            raise CommandError(argv, rc)
        return CommandResult(argv, rc, '', '')


class Response:
    def __init__(self, status_code):
        self.status_code = status_code


@pytest.fixture
def config(tmp_path):
    return OfflineConfig(workdir=tmp_path, services={'registry_host': '10.0.0.100'})


@pytest.fixture
def offline_dir(config):
    path = config.source_dir / "contrib" / "offline"
    (path / "temp").mkdir(parents=True)
    return path


def bundle_with(offline_dir, *components):
    bundle = ArtifactBundle("v2.29.0")
    for component in components:
        bundle._components[component] = offline_dir
    return bundle


def make_publisher(config, docker, http_get=lambda url, timeout: Response(200)):
    retry = RetryExecutor(RetryPolicy(max_attempts=2), sleep=lambda _: None)
    return RegistryPublisher(config, DockerProbe(), retry, runner=docker, http_get=http_get)


def test_nginx_tag_from_manifest(tmp_path):
    images = tmp_path / "images.list"
    images.write_text("registry.k8s.io/pause:3.10\ndocker.io/library/nginx:1.27.4-alpine\n")
    assert nginx_tag(images, "1.28.0-alpine") == "1.27.4-alpine"


def test_nginx_tag_default(tmp_path):
    assert nginx_tag(tmp_path / "missing.list", "1.28.0-alpine") == "1.28.0-alpine"
    images = tmp_path / "images.list"
    images.write_text("quay.io/calico/node:v3.29.1\n")
    assert nginx_tag(images, "1.28.0-alpine") == "1.28.0-alpine"


def test_publish_starts_registry_and_registers(config, offline_dir):
    (offline_dir / "registry-latest.tar").write_bytes(b"image")
    docker = FakeDocker()
    urls = []

    def http_get(url, timeout):
        urls.append(url)
        return Response(200)

    make_publisher(config, docker, http_get).publish(
        bundle_with(offline_dir, BundleComponent.IMAGES, BundleComponent.REGISTRY_SNAPSHOT))

    assert ['docker', 'load', '-i', str(offline_dir / "registry-latest.tar")] in docker.calls
    assert ['docker', 'run', '-d', '--name', 'registry', '--restart=always',
            '-p', '5000:5000', 'registry:latest'] in docker.calls
    assert urls == ['http://10.0.0.100:5000/v2/']
    register = docker.calls.index(['sh', './manage-offline-container-images.sh', 'register'])
    assert docker.envs[register] == {'DESTINATION_REGISTRY': '10.0.0.100:5000'}


def test_running_registry_is_not_restarted(config, offline_dir):
    (offline_dir / "registry-latest.tar").write_bytes(b"image")
    docker = FakeDocker(containers={'registry'})
    make_publisher(config, docker).publish(
        bundle_with(offline_dir, BundleComponent.IMAGES, BundleComponent.REGISTRY_SNAPSHOT))
    assert not any(call[1] == 'run' for call in docker.calls)


def test_publish_skipped_without_images(config, offline_dir):
    docker = FakeDocker()
    make_publisher(config, docker).publish(bundle_with(offline_dir, BundleComponent.SOURCE))
    assert docker.calls == []


def test_registry_not_answering(config, offline_dir):
    docker = FakeDocker(images={'registry:latest'})

    def refused(url, timeout):
        raise requests.ConnectionError("connection refused")

    with pytest.raises(RegistryError):
        make_publisher(config, docker, refused).publish(bundle_with(offline_dir, BundleComponent.IMAGES))


def test_registration_failure_is_fatal(config, offline_dir):
    docker = FakeDocker(images={'registry:latest'}, failing=('register',))
    with pytest.raises(RegistryError):
        make_publisher(config, docker).publish(bundle_with(offline_dir, BundleComponent.IMAGES))


def test_file_server_uses_manifest_tag(config, offline_dir):
    (offline_dir / "offline-files").mkdir()
    (offline_dir / "temp" / "images.list").write_text("docker.io/library/nginx:1.27.4-alpine\n")
    docker = FakeDocker(images={'nginx:1.27.4-alpine'})

    make_publisher(config, docker).start_file_server()

    assert ['docker', 'run', '-d', '--name', 'nginx', '-p', '8080:80',
            '-v', f"{offline_dir / 'offline-files'}:/usr/share/nginx/html/download",
            'nginx:1.27.4-alpine'] in docker.calls


def test_file_server_pulls_from_local_registry(config, offline_dir):
    (offline_dir / "offline-files").mkdir()
    docker = FakeDocker()

    make_publisher(config, docker).start_file_server()

    assert docker.calls[2] == ['docker', 'pull', '10.0.0.100:5000/library/nginx:1.28.0-alpine']
    assert docker.calls[-1][-1] == '10.0.0.100:5000/library/nginx:1.28.0-alpine'


def test_file_server_skipped_without_files(config, offline_dir):
    docker = FakeDocker()
    make_publisher(config, docker).start_file_server()
    assert docker.calls == []
