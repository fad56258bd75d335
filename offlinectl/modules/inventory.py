"""Kubespray inventory and offline override rendering.

Documents are built as plain nested dicts and serialised once with
``yaml.safe_dump``; nothing is read back from a previous rendering.
"""
import logging
import shutil
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError
from .models import FleetTopology

logger = logging.getLogger("offline.inventory")

ROLE_GROUPS = ('kube_control_plane', 'kube_node')

IMAGE_REPO_KEYS = ('kube', 'gcr', 'github', 'docker', 'quay')

# Download URL templates relative to files_repo; Ansible expands the variables
DOWNLOAD_URLS = {
    'kubeadm': "dl.k8s.io/release/v{{ kube_version }}/bin/linux/{{ image_arch }}/kubeadm",
    'kubectl': "dl.k8s.io/release/v{{ kube_version }}/bin/linux/{{ image_arch }}/kubectl",
    'kubelet': "dl.k8s.io/release/v{{ kube_version }}/bin/linux/{{ image_arch }}/kubelet",
    'etcd': "github.com/etcd-io/etcd/releases/download/v{{ etcd_version }}/etcd-v{{ etcd_version }}-linux-{{ image_arch }}.tar.gz",
    'cni': "github.com/containernetworking/plugins/releases/download/v{{ cni_version }}/cni-plugins-linux-{{ image_arch }}-v{{ cni_version }}.tgz",
    'crictl': "github.com/kubernetes-sigs/cri-tools/releases/download/v{{ crictl_version }}/crictl-v{{ crictl_version }}-{{ ansible_system | lower }}-{{ image_arch }}.tar.gz",
    'calicoctl': "github.com/projectcalico/calico/releases/download/v{{ calico_ctl_version }}/calicoctl-linux-{{ image_arch }}",
    'calico_crds': "github.com/projectcalico/calico/archive/v{{ calico_version }}.tar.gz",
    'ciliumcli': "github.com/cilium/cilium-cli/releases/download/v{{ cilium_cli_version }}/cilium-linux-{{ image_arch }}.tar.gz",
    'helm': "get.helm.sh/helm-v{{ helm_version }}-linux-{{ image_arch }}.tar.gz",
    'runc': "github.com/opencontainers/runc/releases/download/v{{ runc_version }}/runc.{{ image_arch }}",
    'nerdctl': "github.com/containerd/nerdctl/releases/download/v{{ nerdctl_version }}/nerdctl-{{ nerdctl_version }}-{{ ansible_system | lower }}-{{ image_arch }}.tar.gz",
    'containerd': "github.com/containerd/containerd/releases/download/v{{ containerd_version }}/containerd-{{ containerd_version }}-linux-{{ image_arch }}.tar.gz",
    'cri_dockerd': "github.com/Mirantis/cri-dockerd/releases/download/v{{ cri_dockerd_version }}/cri-dockerd-{{ cri_dockerd_version }}.{{ image_arch }}.tgz",
}

# OS family -> repo variable used by the runtime repo templates
PACKAGE_REPOS = {'rh': 'yum_repo', 'debian': 'debian_repo', 'ubuntu': 'ubuntu_repo'}


class InventoryDocument:
    """Rendered ``hosts.yaml`` content."""

    def __init__(self, data: Dict[str, Any]):
        self.data = data

    @property
    def hosts(self) -> Dict[str, Any]:
        return self.data['all']['hosts']

    def group(self, name: str) -> Dict[str, Any]:
        children = self.data['all']['children']
        return children[name]['hosts'] or {}

    def validate(self) -> None:
        """Check the group invariants.

        Raises:
            ConfigError: If a node is missing from the host list, belongs to
                zero or two role groups, or etcd differs from the control plane
        """
        hosts = set(self.hosts)
        control_plane = set(self.group('kube_control_plane'))
        workers = set(self.group('kube_node'))
        etcd = set(self.group('etcd'))

        unknown = (control_plane | workers | etcd) - hosts
        if unknown:
            raise ConfigError(f"Groups reference unknown hosts: {sorted(unknown)}")
        both = control_plane & workers
        if both:
            raise ConfigError(f"Hosts in both control plane and worker groups: {sorted(both)}")
        orphans = hosts - control_plane - workers
        if orphans:
            raise ConfigError(f"Hosts without a role group: {sorted(orphans)}")
        if etcd != control_plane:
            raise ConfigError("etcd membership must match the control plane")

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.data, default_flow_style=False, sort_keys=False)


class InventoryModel:
    """Renders the fleet into Kubespray's inventory and offline overrides."""

    def __init__(self, config):
        self.config = config
        self.services = config.services

    def render(self, topology: FleetTopology) -> InventoryDocument:
        hosts = {}
        for node in topology:
            hosts[node.id] = {'ansible_host': node.address, 'ip': node.address}

        groups = topology.groups
        children: Dict[str, Any] = {}
        for name in ('kube_control_plane', 'kube_node', 'etcd'):
            children[name] = {'hosts': {node_id: None for node_id in groups[name]}}
        children['k8s_cluster'] = {'children': {name: None for name in ROLE_GROUPS}}

        document = InventoryDocument({'all': {'hosts': hosts, 'children': children}})
        document.validate()
        return document

    def render_overrides(self) -> Dict[str, Any]:
        """Variables pointing every download and repository at the local services."""
        files_url = self.services.files_url
        overrides: Dict[str, Any] = {
            'registry_host': self.services.registry_address,
            'files_repo': files_url,
        }
        for repo in IMAGE_REPO_KEYS:
            overrides[f'{repo}_image_repo'] = "{{ registry_host }}"
        for name, path in DOWNLOAD_URLS.items():
            overrides[f'{name}_download_url'] = "{{ files_repo }}/" + path

        overrides['skip_upstream_repo'] = True
        overrides['yum_repo'] = f"{files_url}/download/yum"
        overrides['debian_repo'] = f"{files_url}/download/debian"
        overrides['ubuntu_repo'] = f"{files_url}/download/ubuntu"

        for family, repo_var in PACKAGE_REPOS.items():
            for runtime in ('docker', 'containerd'):
                base = "{{ %s }}/%s" % (repo_var, 'docker-ce' if runtime == 'docker' else 'containerd')
                overrides[f'{runtime}_{family}_repo_base_url'] = base
                overrides[f'{runtime}_{family}_repo_gpgkey'] = f"{base}/gpg"
        return overrides

    def render_containerd(self) -> Dict[str, Any]:
        registry = self.services.registry_address
        return {
            'containerd_registries_mirrors': [
                {
                    'prefix': registry,
                    'mirrors': [
                        {
                            'host': f"http://{registry}",
                            'capabilities': ['pull', 'resolve'],
                            'skip_verify': True,
                        }
                    ],
                }
            ]
        }

    def write(self, topology: FleetTopology, source_dir: Optional[Path] = None) -> Path:
        """Write a fresh ``inventory/mycluster`` under the Kubespray tree.

        Returns:
            Path: The written ``hosts.yaml``
        """
        source_dir = Path(source_dir or self.config.source_dir)
        inventory_dir = source_dir / "inventory" / "mycluster"
        sample_dir = source_dir / "inventory" / "sample"

        if inventory_dir.exists():
            logger.info(f"Removing previous inventory {inventory_dir}")
            shutil.rmtree(inventory_dir)
        if sample_dir.is_dir():
            shutil.copytree(sample_dir, inventory_dir)
        else:
            logger.warning(f"⚠️  {sample_dir} not found, writing inventory without sample group_vars")

        group_vars = inventory_dir / "group_vars" / "all"
        group_vars.mkdir(parents=True, exist_ok=True)

        document = self.render(topology)
        hosts_file = inventory_dir / "hosts.yaml"
        hosts_file.write_text(document.to_yaml())
        _dump(group_vars / "offline.yml", self.render_overrides())
        _dump(group_vars / "containerd.yml", self.render_containerd())

        logger.info(f"✅ Inventory written to {hosts_file} ({len(topology)} node(s))")
        return hosts_file


def _dump(path: Path, data: Dict[str, Any]) -> None:
    with open(path, 'w') as f:
        f.write("---\n")
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
