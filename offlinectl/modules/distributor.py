"""Local unpacking of the bundle and its distribution to every node."""
import logging
import tarfile
from pathlib import Path
from typing import Callable, Optional

from .errors import BundleError, RetryExhausted, TransferError
from .models import BUNDLE_MANIFEST, ArtifactBundle, Node
from .retry import RetryExecutor

logger = logging.getLogger("offline.distributor")


def _extract(archive: Path, target: Path) -> None:
    with tarfile.open(archive, "r:gz") as tar:
        if hasattr(tarfile, 'data_filter'):
            tar.extractall(target, filter='data')
        else:
            tar.extractall(target)


class BundleDistributor:
    """Copies the bundle archive to nodes and unpacks it there."""

    def __init__(self, config, connect: Callable, retry: RetryExecutor):
        self.workdir = Path(config.workdir)
        self.remote_workdir = config.remote_workdir
        self.archive_path = Path(config.archive_path)
        self._connect = connect
        self.retry = retry

    def unpack_local(self, archive: Optional[Path] = None) -> ArtifactBundle:
        """Unpack the archive into the workdir unless it already is, and read its manifest.

        Raises:
            BundleError: If the archive is missing or unreadable
        """
        archive = Path(archive or self.archive_path)
        manifest = self.workdir / BUNDLE_MANIFEST

        if not manifest.exists():
            if not archive.is_file():
                raise BundleError(f"Bundle archive not found: {archive}")
            logger.info(f"Unpacking {archive.name} into {self.workdir}")
            try:
                _extract(archive, self.workdir)
            except (OSError, tarfile.TarError) as e:
                raise BundleError(f"Failed to unpack {archive}: {e}") from e
        else:
            logger.info(f"Bundle already unpacked in {self.workdir}")

        bundle = ArtifactBundle.load_manifest(manifest, base_dir=self.workdir)
        components = ", ".join(c.value for c in bundle.components) or "none"
        logger.info(f"Bundle {bundle.version}: {components}")
        bundle.seal(archive)
        return bundle

    def _remote(self, conn, node: Node, command: str) -> None:
        rc, _, stderr = conn.execute(command)
        if rc != 0:
            raise TransferError(f"'{command}' failed on {node.id}: {stderr.strip()}")

    def distribute(self, bundle: ArtifactBundle, node: Node) -> None:
        """Copy the archive to node and extract it in the remote workdir.

        Raises:
            TransferError: If any step keeps failing after retries
        """
        archive = Path(bundle.archive or self.archive_path)
        remote_archive = f"{self.remote_workdir}/{archive.name}"
        conn = self._connect(node)

        try:
            self.retry.run(lambda: self._remote(conn, node, f'mkdir -p {self.remote_workdir}'),
                           f"create {self.remote_workdir} on {node.id}")
            logger.info(f"Copying {archive.name} to {node.id} ({node.address})...")
            self.retry.run(lambda: conn.put(str(archive), remote_archive), f"copy bundle to {node.id}")
            self.retry.run(lambda: self._remote(conn, node, f'tar xzf {remote_archive} -C {self.remote_workdir}'),
                           f"unpack bundle on {node.id}")
        except RetryExhausted as e:
            raise TransferError(f"Distribution to {node.id} failed: {e}") from e
        logger.info(f"✅ Bundle distributed to {node.id} ({node.address})")
