"""Local image registry and file server for the offline fleet."""
import logging
from pathlib import Path
from typing import Callable, Optional

import requests

from .capability import RuntimeProbe
from .errors import CommandError, MissingCommand, RegistryError, RetryExhausted
from .models import ArtifactBundle, BundleComponent
from .retry import RetryExecutor
from .utils import CommandResult, run_command

logger = logging.getLogger("offline.registry")

REGISTRY_CONTAINER = "registry"
FILE_SERVER_CONTAINER = "nginx"
REGISTRY_INTERNAL_PORT = 5000
NGINX_PREFIX = "docker.io/library/nginx:"


def nginx_tag(images_list: Path, default: str) -> str:
    """Tag of the nginx image listed in images.list, or default."""
    images_list = Path(images_list)
    if images_list.is_file():
        for line in images_list.read_text().splitlines():
            line = line.strip()
            if line.startswith(NGINX_PREFIX):
                tag = line[len(NGINX_PREFIX):]
                if tag:
                    return tag
    return default


class RegistryPublisher:
    """Boots the local registry, pushes bundled images and serves bundled files."""

    def __init__(
        self,
        config,
        runtime_probe: RuntimeProbe,
        retry: RetryExecutor,
        runner: Callable[..., CommandResult] = run_command,
        http_get: Callable[..., requests.Response] = requests.get,
    ):
        self.services = config.services
        self.offline_dir = Path(config.source_dir) / "contrib" / "offline"
        self.runtime = runtime_probe
        self.retry = retry
        self._runner = runner
        self._http_get = http_get

    def _exists(self, argv) -> bool:
        try:
            return self._runner(argv, check=False).ok
        except (MissingCommand, CommandError):
            return False

    def publish(self, bundle: ArtifactBundle) -> None:
        """Start the registry if needed and register every bundled image.

        Raises:
            RegistryError: If the registry cannot be started or populated
        """
        if not bundle.has(BundleComponent.IMAGES):
            logger.warning("⚠️  Bundle has no container images, skipping registry")
            return

        self.start_registry(bundle)
        self.wait_ready()
        self.register_images()

    def start_registry(self, bundle: ArtifactBundle) -> None:
        snapshot = self.offline_dir / "registry-latest.tar"
        image = self.services.registry_image

        try:
            if bundle.has(BundleComponent.REGISTRY_SNAPSHOT) and snapshot.is_file():
                logger.info(f"Loading registry image from {snapshot.name}")
                self.retry.run(lambda: self._runner(self.runtime.load(str(snapshot))), f"load {snapshot.name}")
            elif not self._exists(self.runtime.inspect_image(image)):
                raise RegistryError(f"Registry image {image} is neither bundled nor present locally")

            if self._exists(self.runtime.inspect_container(REGISTRY_CONTAINER)):
                logger.info("Registry container already exists")
                return

            argv = self.runtime.run(
                REGISTRY_CONTAINER,
                image,
                ports={self.services.registry_port: REGISTRY_INTERNAL_PORT},
                restart='always',
            )
            self.retry.run(lambda: self._runner(argv), "start registry")
        except RetryExhausted as e:
            raise RegistryError(f"Failed to start the local registry: {e}") from e
        logger.info(f"✅ Registry started on {self.services.registry_address}")

    def _probe(self, url: str) -> None:
        response = self._http_get(url, timeout=5)
        # 401 still means the registry API is up
        if response.status_code >= 500:
            raise RegistryError(f"{url} answered {response.status_code}")

    def wait_ready(self) -> None:
        url = f"http://{self.services.registry_address}/v2/"
        try:
            self.retry.run(lambda: self._probe(url), f"wait for {url}")
        except RetryExhausted as e:
            raise RegistryError(f"Registry at {url} is not answering: {e}") from e

    def register_images(self) -> None:
        address = self.services.registry_address
        logger.info(f"Registering images into {address}...")
        try:
            self.retry.run(
                lambda: self._runner(
                    ['sh', './manage-offline-container-images.sh', 'register'],
                    cwd=self.offline_dir,
                    env={'DESTINATION_REGISTRY': address},
                ),
                "register images",
            )
        except RetryExhausted as e:
            raise RegistryError(f"Image registration into {address} failed: {e}") from e
        logger.info(f"✅ Images registered into {address}")

    def _ensure_image(self, tag: str) -> Optional[str]:
        """Return a locally available nginx reference, pulling it if needed."""
        candidates = [
            f"nginx:{tag}",
            f"{self.services.registry_address}/library/nginx:{tag}",
        ]
        if self._exists(self.runtime.inspect_image(candidates[0])):
            return candidates[0]
        for image in reversed(candidates):
            if self._exists(self.runtime.pull(image)):
                return image
        return None

    def start_file_server(self) -> None:
        """Serve offline-files over HTTP; every failure here is a warning."""
        files_dir = self.offline_dir / "offline-files"
        if not files_dir.is_dir():
            logger.warning(f"⚠️  {files_dir} not found, file server not started")
            return

        if self._exists(self.runtime.inspect_container(FILE_SERVER_CONTAINER)):
            logger.info("File server container already exists")
            return

        tag = nginx_tag(self.offline_dir / "temp" / "images.list", self.services.file_server_default_tag)
        logger.info(f"Using nginx tag {tag}")
        image = self._ensure_image(tag)
        if image is None:
            logger.warning(f"⚠️  nginx:{tag} is not available, file server not started")
            return

        argv = self.runtime.run(
            FILE_SERVER_CONTAINER,
            image,
            ports={self.services.file_server_port: 80},
            volumes={str(files_dir): '/usr/share/nginx/html/download'},
        )
        if self._exists(argv):
            logger.info(f"✅ File server started on {self.services.files_url}")
        else:
            logger.warning("⚠️  File server container failed to start")
