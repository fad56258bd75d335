"""Post-deployment cluster checks. Nothing here is fatal."""
import logging
import os
from pathlib import Path
from typing import Callable, List, Optional

from kubernetes import client, config as kube_config

from .models import Node, VerificationReport

logger = logging.getLogger("offline.health")


def load_kubeconfig(path: Optional[str] = None) -> str:
    """Load the kubeconfig from a given path or from the KUBECONFIG_CONTENT env var.

    Returns:
        str: The path actually loaded
    """
    if "KUBECONFIG_CONTENT" in os.environ:
        temp_path = Path("/tmp/offlinectl-kubeconfig.yaml")
        temp_path.write_text(os.environ["KUBECONFIG_CONTENT"])
        os.chmod(temp_path, 0o600)
        kube_config.load_kube_config(config_file=str(temp_path))
        return str(temp_path)

    if path:
        resolved = Path(os.path.expanduser(path)).resolve()
        if not resolved.exists():
            raise FileNotFoundError(f"❌ Kubeconfig not found: {resolved}")
        kube_config.load_kube_config(config_file=str(resolved))
        return str(resolved)

    raise ValueError("No kubeconfig path provided and KUBECONFIG_CONTENT is not set.")


def _node_ready(node) -> str:
    for condition in node.status.conditions or []:
        if condition.type == 'Ready':
            return 'Ready' if condition.status == 'True' else 'NotReady'
    return 'Unknown'


def _internal_ip(node) -> str:
    for address in node.status.addresses or []:
        if address.type == 'InternalIP':
            return address.address
    return ''


class VerificationProbe:
    """Queries nodes, kube-system pods and version from the first control-plane node."""

    def __init__(self, config, connect: Callable, kube_loader: Callable[[Optional[str]], str] = load_kubeconfig):
        self.settings = config.verification
        self._connect = connect
        self._load_kubeconfig = kube_loader

    def verify(self, node: Node) -> VerificationReport:
        if self.settings.kubeconfig:
            report = self._verify_api(node)
        else:
            report = self._verify_ssh(node)

        for warning in report.warnings:
            logger.warning(f"⚠️  {warning}")
        if report.healthy:
            logger.info("✅ Cluster verification passed")
        else:
            logger.warning("⚠️  Cluster verification reported problems, check the output above")
        return report

    def _verify_ssh(self, node: Node) -> VerificationReport:
        report = VerificationReport(node_id=node.id)
        try:
            conn = self._connect(node)
            rc, _, _ = conn.execute('command -v kubectl', timeout=30)
        except Exception as e:
            report.warnings.append(f"Could not connect to {node.id}: {e}")
            return report

        kubectl = 'kubectl' if rc == 0 else self.settings.kubectl
        queries = [
            ('nodes', f'{kubectl} get nodes -o wide'),
            ('system_pods', f'{kubectl} get pods -n kube-system'),
            ('version', f'{kubectl} version'),
        ]
        for field, command in queries:
            rc, stdout, stderr = conn.execute(command, timeout=60)
            if rc != 0:
                report.warnings.append(f"'{command}' failed on {node.id}: {stderr.strip() or rc}")
                continue
            setattr(report, field, stdout.strip())
            logger.info(f"{command}:\n{stdout.strip()}")
        return report

    def _verify_api(self, node: Node) -> VerificationReport:
        report = VerificationReport(node_id=node.id)
        try:
            self._load_kubeconfig(self.settings.kubeconfig)
        except (OSError, ValueError, kube_config.ConfigException) as e:
            report.warnings.append(f"Could not load kubeconfig: {e}")
            return report

        core = client.CoreV1Api()
        try:
            lines: List[str] = []
            for item in core.list_node().items:
                lines.append(f"{item.metadata.name}\t{_node_ready(item)}\t{_internal_ip(item)}\t"
                             f"{item.status.node_info.kubelet_version}")
            report.nodes = "\n".join(lines)
            logger.info(f"Nodes:\n{report.nodes}")
        except Exception as e:
            report.warnings.append(f"Listing nodes failed: {e}")

        try:
            lines = []
            for pod in core.list_namespaced_pod('kube-system').items:
                lines.append(f"{pod.metadata.name}\t{pod.status.phase}")
            report.system_pods = "\n".join(lines)
            logger.info(f"kube-system pods:\n{report.system_pods}")
        except Exception as e:
            report.warnings.append(f"Listing kube-system pods failed: {e}")

        try:
            info = client.VersionApi().get_code()
            report.version = info.git_version
            logger.info(f"Server version: {report.version}")
        except Exception as e:
            report.warnings.append(f"Reading the server version failed: {e}")
        return report
