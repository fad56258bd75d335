"""Offline bundle preparation.

Stages, in order:
1. Fetch or update the Kubespray source tree at the pinned tag
2. Build the virtual environment and download the Python dependency cache
3. Generate image/file manifests and package each non-empty one
4. Download OS packages for the host's package family (best effort)
5. Write the deployment guide
6. Archive every component that was actually produced

Stages 1, 2 and 6 are fatal. Everything else degrades the bundle by
leaving a component out.
"""
import logging
import shutil
import tarfile
from pathlib import Path
from typing import Callable, Dict, List, Optional

import yaml

from .capability import RuntimeProbe
from .errors import BundleError, CommandError, RetryExhausted
from .models import BUNDLE_MANIFEST, ArtifactBundle, BundleComponent, InterpreterInfo
from .retry import RetryExecutor
from .templates import render_guide
from .utils import CommandResult, non_empty_lines, run_command

logger = logging.getLogger("offline.bundler")

GUIDE_NAME = "OFFLINE_DEPLOYMENT_GUIDE.md"

DEBIAN_MARKER = "etc/debian_version"
REDHAT_MARKER = "etc/redhat-release"


def detect_os_family(root: Path = Path("/")) -> Optional[str]:
    """Return ``deb`` or ``rpm`` from the distro marker files under root."""
    if (root / DEBIAN_MARKER).exists():
        return "deb"
    if (root / REDHAT_MARKER).exists():
        return "rpm"
    return None


def _size(path: Path) -> str:
    path = Path(path)
    if path.is_file():
        total = path.stat().st_size
    else:
        total = sum(p.stat().st_size for p in path.rglob("*") if p.is_file())
    for unit in ("B", "K", "M", "G"):
        if total < 1024:
            return f"{total:.0f}{unit}"
        total /= 1024
    return f"{total:.1f}T"


class ArtifactBundler:
    """Assembles the offline bundle under the configured workdir."""

    def __init__(
        self,
        config,
        interpreter: InterpreterInfo,
        runtime_probe: RuntimeProbe,
        retry: RetryExecutor,
        runner: Callable[..., CommandResult] = run_command,
        which: Callable[[str], Optional[str]] = shutil.which,
        os_root: Path = Path("/"),
    ):
        self.config = config
        self.interpreter = interpreter
        self.runtime_probe = runtime_probe
        self.retry = retry
        self._runner = runner
        self._which = which
        self.os_root = Path(os_root)

        self.workdir = Path(config.workdir)
        self.source_dir = self.workdir / "kubespray"
        self.pip_dir = self.workdir / "pip"
        self.deb_dir = self.workdir / "os-packages" / "deb"
        self.rpm_dir = self.workdir / "os-packages" / "rpm"
        self.offline_dir = self.source_dir / "contrib" / "offline"
        self.images_list = self.offline_dir / "temp" / "images.list"
        self.files_list = self.offline_dir / "temp" / "files.list"
        self.images_archive = self.offline_dir / "container-images.tar.gz"
        self.registry_snapshot = self.offline_dir / "registry-latest.tar"
        self.offline_files = self.offline_dir / "offline-files"

    def _retry(self, argv: List[str], description: str, cwd: Optional[Path] = None,
               env: Optional[Dict[str, str]] = None) -> CommandResult:
        return self.retry.run(lambda: self._runner(argv, cwd=cwd, env=env), description)

    def prepare(self) -> ArtifactBundle:
        """Run every stage and return the sealed bundle."""
        for path in (self.workdir, self.pip_dir, self.deb_dir, self.rpm_dir):
            path.mkdir(parents=True, exist_ok=True)
        logger.info(f"Working directory: {self.workdir}")

        bundle = ArtifactBundle(self.config.kubespray_version)

        logger.info("=== [1/6] Fetching Kubespray source ===")
        self.fetch_source(bundle)
        logger.info("=== [2/6] Resolving Python dependencies ===")
        self.resolve_runtime_deps(bundle)
        logger.info("=== [3/6] Packaging images and files ===")
        self.package_manifests(bundle)
        logger.info("=== [4/6] Downloading OS packages ===")
        self.mirror_os_packages(bundle)
        logger.info("=== [5/6] Writing deployment guide ===")
        self.write_guide(bundle)
        logger.info("=== [6/6] Assembling bundle ===")
        self.assemble(bundle)
        return bundle

    # Stage 1

    def fetch_source(self, bundle: ArtifactBundle) -> None:
        version = self.config.kubespray_version

        if not self.source_dir.is_dir():
            logger.info(f"Cloning Kubespray {version}...")
            try:
                self._retry(
                    ['git', 'clone', '-b', version, self.config.kubespray_repo, str(self.source_dir)],
                    f"git clone {version}",
                )
            except RetryExhausted as e:
                raise BundleError(f"Failed to clone Kubespray: {e}") from e
        else:
            logger.info("Source tree exists, updating...")
            try:
                self._retry(['git', 'fetch', '--all'], "git fetch", cwd=self.source_dir)
            except RetryExhausted:
                logger.warning("⚠️  Fetch failed, continuing with the existing checkout")
            else:
                checkout = self._runner(['git', 'checkout', version], cwd=self.source_dir, check=False)
                if not checkout.ok:
                    logger.warning(f"⚠️  Could not check out {version}")
                pull = self._runner(['git', 'pull'], cwd=self.source_dir, check=False)
                if not pull.ok:
                    logger.warning("⚠️  git pull failed, continuing with the existing checkout")

        if not bundle.include(BundleComponent.SOURCE, self.source_dir):
            raise BundleError(f"Source tree {self.source_dir} is empty")

    # Stage 2

    def resolve_runtime_deps(self, bundle: ArtifactBundle) -> None:
        venv_dir = self.source_dir / "venv"
        if not venv_dir.is_dir():
            logger.info(f"Creating virtual environment with {self.interpreter.command}...")
            try:
                self._runner([self.interpreter.command, '-m', 'venv', str(venv_dir)], cwd=self.source_dir)
            except CommandError as e:
                raise BundleError(f"Failed to create virtual environment: {e}") from e

        requirements = self.source_dir / "requirements.txt"
        if not requirements.is_file():
            raise BundleError(f"requirements.txt not found in {self.source_dir}")

        pip = str(venv_dir / "bin" / "pip")
        try:
            self._retry([pip, 'install', '-r', str(requirements)], "pip install", cwd=self.source_dir)
            self._retry(
                [pip, 'download', '-r', str(requirements), '-d', str(self.pip_dir)],
                "pip download",
                cwd=self.source_dir,
            )
        except RetryExhausted as e:
            raise BundleError(f"Failed to resolve Python dependencies: {e}") from e

        if not bundle.include(BundleComponent.RUNTIME_DEPS, self.pip_dir):
            raise BundleError(f"No Python packages were downloaded into {self.pip_dir}")

    # Stage 3

    def package_manifests(self, bundle: ArtifactBundle) -> None:
        generator = self.offline_dir / "generate_list.sh"
        if not generator.is_file():
            logger.warning(f"⚠️  {generator} not found, skipping images and files")
            return

        self.images_list.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._retry(
                ['bash', 'contrib/offline/generate_list.sh', '-e', f'kube_version={self.config.kube_version}'],
                "generate image and file lists",
                cwd=self.source_dir,
            )
        except RetryExhausted:
            logger.warning("⚠️  Manifest generation failed, skipping images and files")
            return

        images = non_empty_lines(self.images_list)
        if images:
            logger.info(f"Image manifest: {len(images)} image(s)")
            self._package_images(bundle)
        else:
            logger.warning("⚠️  Image manifest is empty, no image archive will be bundled")

        files = non_empty_lines(self.files_list)
        if files:
            logger.info(f"File manifest: {len(files)} file(s)")
            self._package_files(bundle)
        else:
            logger.warning("⚠️  File manifest is empty, no file mirror will be bundled")

    def _package_images(self, bundle: ArtifactBundle) -> None:
        try:
            self._retry(
                ['sh', './manage-offline-container-images.sh', 'create'],
                "create container image archive",
                cwd=self.offline_dir,
                env={'IMAGES_FROM_FILE': str(self.images_list)},
            )
        except RetryExhausted:
            logger.warning("⚠️  Image packaging failed, images excluded from bundle")
            return

        if not bundle.include(BundleComponent.IMAGES, self.images_archive):
            return

        image = self.config.services.registry_image
        probe = self.runtime_probe
        try:
            if not self._runner(probe.inspect_image(image), check=False).ok:
                self._retry(probe.pull(image), f"pull {image}")
            self._retry(probe.save(str(self.registry_snapshot), image), f"save {image}")
        except RetryExhausted:
            logger.warning(f"⚠️  Could not snapshot {image}, registry image excluded from bundle")
            return
        bundle.include(BundleComponent.REGISTRY_SNAPSHOT, self.registry_snapshot)

    def _package_files(self, bundle: ArtifactBundle) -> None:
        try:
            self._retry(
                ['sh', './manage-offline-files.sh'],
                "download offline files",
                cwd=self.offline_dir,
                env={'FILES_LIST': str(self.files_list), 'NO_HTTP_SERVER': 'true'},
            )
        except RetryExhausted:
            logger.warning("⚠️  File download failed, files excluded from bundle")
            return
        bundle.include(BundleComponent.FILES, self.offline_files)

    # Stage 4

    def mirror_os_packages(self, bundle: ArtifactBundle) -> None:
        family = detect_os_family(self.os_root)
        if family == "deb":
            logger.info("Detected Debian/Ubuntu host")
            self._mirror_deb(bundle)
        elif family == "rpm":
            logger.info("Detected RedHat/CentOS host")
            self._mirror_rpm(bundle)
        else:
            logger.warning("⚠️  Unknown OS family, skipping system packages")

    def _mirror_deb(self, bundle: ArtifactBundle) -> None:
        if not self._which('apt-get'):
            logger.warning("⚠️  apt-get not found, skipping Debian/Ubuntu packages")
            return
        try:
            self._retry(['apt-get', 'update'], "apt-get update")
            self._retry(
                ['apt-get', 'install', '--download-only', '-y', *self.config.packages.debian],
                "download Debian packages",
            )
        except RetryExhausted:
            logger.warning("⚠️  Debian package download failed")
            return

        cache = self.os_root / "var" / "cache" / "apt" / "archives"
        if not cache.is_dir():
            logger.warning(f"⚠️  apt cache {cache} not found")
            return
        for package in cache.glob("*.deb"):
            shutil.copy2(package, self.deb_dir / package.name)
        bundle.include(BundleComponent.OS_PACKAGES_DEB, self.deb_dir, "*.deb")

    def _mirror_rpm(self, bundle: ArtifactBundle) -> None:
        if not self._which('yum'):
            logger.warning("⚠️  yum not found, skipping RedHat/CentOS packages")
            return

        if not self._runner(['rpm', '-q', 'epel-release'], check=False).ok:
            try:
                self._retry(['yum', 'install', '-y', 'epel-release'], "install epel-release")
            except RetryExhausted:
                logger.warning("⚠️  EPEL installation failed, some packages may be unavailable")

        try:
            self._retry(
                ['yum', 'install', '--downloadonly', f'--downloaddir={self.rpm_dir}', '-y',
                 *self.config.packages.redhat],
                "download RedHat packages",
            )
        except RetryExhausted:
            logger.warning("⚠️  RedHat package download failed")
            return
        bundle.include(BundleComponent.OS_PACKAGES_RPM, self.rpm_dir, "*.rpm")

    # Stage 5

    def write_guide(self, bundle: ArtifactBundle) -> Path:
        guide = self.workdir / GUIDE_NAME
        components = bundle.components + [BundleComponent.DOCS]
        guide.write_text(render_guide(
            version=self.config.kubespray_version,
            kube_version=self.config.kube_version,
            archive_name=bundle.archive_name,
            components=components,
        ))
        bundle.include(BundleComponent.DOCS, guide)
        return guide

    # Stage 6

    def _top_level_members(self) -> Dict[BundleComponent, str]:
        return {
            BundleComponent.SOURCE: "kubespray",
            BundleComponent.RUNTIME_DEPS: "pip",
            BundleComponent.OS_PACKAGES_DEB: "os-packages/deb",
            BundleComponent.OS_PACKAGES_RPM: "os-packages/rpm",
            BundleComponent.DOCS: GUIDE_NAME,
        }

    def _excluded_members(self, bundle: ArtifactBundle) -> List[str]:
        """Artifacts inside the source tree whose component was not produced."""
        nested = {
            BundleComponent.IMAGES: self.images_archive,
            BundleComponent.REGISTRY_SNAPSHOT: self.registry_snapshot,
            BundleComponent.FILES: self.offline_files,
        }
        excluded = []
        for component, path in nested.items():
            if not bundle.has(component):
                excluded.append(path.relative_to(self.workdir).as_posix())
        # offline-files.tar.gz is produced alongside the file mirror
        if not bundle.has(BundleComponent.FILES):
            excluded.append((self.offline_dir / "offline-files.tar.gz").relative_to(self.workdir).as_posix())
        return excluded

    def assemble(self, bundle: ArtifactBundle) -> Path:
        archive = self.workdir / bundle.archive_name
        partial = archive.with_name(archive.name + ".partial")
        manifest = self.workdir / BUNDLE_MANIFEST
        excluded = self._excluded_members(bundle)

        def _filter(tarinfo: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
            for name in excluded:
                if tarinfo.name == name or tarinfo.name.startswith(name + "/"):
                    return None
            return tarinfo

        try:
            with open(manifest, 'w') as f:
                yaml.safe_dump(bundle.manifest(), f, default_flow_style=False, sort_keys=False)
            with tarfile.open(partial, "w:gz") as tar:
                for component, arcname in self._top_level_members().items():
                    if bundle.has(component):
                        tar.add(str(self.workdir / arcname), arcname=arcname, filter=_filter)
                tar.add(str(manifest), arcname=BUNDLE_MANIFEST)
            partial.replace(archive)
        except (OSError, tarfile.TarError) as e:
            partial.unlink(missing_ok=True)
            raise BundleError(f"Failed to create bundle archive {archive}: {e}") from e

        bundle.seal(archive)
        logger.info(f"✅ Offline bundle created: {archive} ({_size(archive)})")
        for component in bundle.components:
            logger.info(f"  - {component.value}: {_size(bundle.path(component))}")
        return archive
