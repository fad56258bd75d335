"""Hands the rendered inventory to Kubespray."""
import logging
import os
from pathlib import Path
from typing import Callable, Optional

import ansible_runner

from .errors import CommandError, DeploymentError
from .utils import CommandResult, run_command

logger = logging.getLogger("offline.deploy")


class DeploymentCoordinator:
    """Runs Kubespray's ``cluster.yml`` once with the bundled virtual environment."""

    def __init__(
        self,
        config,
        runner: Callable[..., CommandResult] = run_command,
        playbook_runner: Callable = ansible_runner.run,
    ):
        self.workdir = Path(config.workdir)
        self.source_dir = Path(config.source_dir)
        self.kube_version = config.kube_version
        self._runner = runner
        self._run_playbook = playbook_runner

    @property
    def venv_bin(self) -> Path:
        return self.source_dir / "venv" / "bin"

    def install_dependencies(self) -> None:
        """Install the cached Python dependencies into the venv without network access."""
        cache = self.workdir / "pip"
        if not cache.is_dir():
            logger.warning(f"⚠️  Dependency cache {cache} not found, using the venv as shipped")
            return
        pip = self.venv_bin / "pip"
        try:
            self._runner(
                [str(pip), 'install', '--no-index', '--find-links', str(cache), '-r', 'requirements.txt'],
                cwd=self.source_dir,
            )
        except CommandError as e:
            raise DeploymentError(f"Offline dependency installation failed: {e}") from e
        logger.info("✅ Python dependencies installed from the offline cache")

    def deploy(self, inventory: Path, kube_version: Optional[str] = None) -> None:
        """Run the installer playbook against inventory.

        Raises:
            DeploymentError: If the playbook does not finish successfully
        """
        kube_version = kube_version or self.kube_version
        self.install_dependencies()

        logger.info(f"🚀 Deploying Kubernetes {kube_version} with {inventory}")
        envvars = {
            'PATH': f"{self.venv_bin}{os.pathsep}{os.environ.get('PATH', '')}",
            'VIRTUAL_ENV': str(self.venv_bin.parent),
            'ANSIBLE_HOST_KEY_CHECKING': 'False',
        }
        try:
            result = self._run_playbook(
                private_data_dir=str(self.workdir / "ansible-runner"),
                project_dir=str(self.source_dir),
                playbook="cluster.yml",
                inventory=str(inventory),
                extravars={'kube_version': kube_version},
                cmdline="--become",
                envvars=envvars,
            )
        except Exception as e:
            raise DeploymentError(f"Could not start the installer: {e}") from e

        if result.rc != 0 or result.status != 'successful':
            raise DeploymentError(f"cluster.yml finished with status '{result.status}' (rc={result.rc})")
        logger.info("✅ Cluster deployment completed")
