"""Data models for the offline bundle and the target fleet."""
import json
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import yaml

from .errors import BundleError, ConfigError
from .utils import has_content

logger = logging.getLogger("offline.models")


class NodeRole(str, Enum):
    """Node roles in the target cluster."""
    CONTROL_PLANE = 'control_plane'
    WORKER = 'worker'


@dataclass
class Node:
    """Represents a node in the fleet."""
    id: str
    role: NodeRole
    address: str
    reachable: bool = False


class FleetTopology:
    """Ordered fleet with its derived Kubespray group memberships.

    Ids are assigned ``node1..nodeN`` in declaration order, control-plane
    addresses first. etcd membership mirrors the control plane.
    """

    def __init__(self, nodes: Sequence[Node]):
        seen: Dict[str, str] = {}
        ids = set()
        for node in nodes:
            if node.address in seen:
                raise ConfigError(
                    f"Address {node.address} is assigned to both {seen[node.address]} and {node.id}"
                )
            if node.id in ids:
                raise ConfigError(f"Duplicate node id {node.id}")
            seen[node.address] = node.id
            ids.add(node.id)
        self._nodes: List[Node] = list(nodes)

    @classmethod
    def from_addresses(cls, control_plane: Iterable[str], workers: Iterable[str] = ()) -> 'FleetTopology':
        nodes = []
        for address in control_plane:
            nodes.append(Node(id=f"node{len(nodes) + 1}", role=NodeRole.CONTROL_PLANE, address=address))
        for address in workers:
            nodes.append(Node(id=f"node{len(nodes) + 1}", role=NodeRole.WORKER, address=address))
        return cls(nodes)

    @property
    def nodes(self) -> List[Node]:
        return list(self._nodes)

    @property
    def control_plane(self) -> List[Node]:
        return [n for n in self._nodes if n.role == NodeRole.CONTROL_PLANE]

    @property
    def workers(self) -> List[Node]:
        return [n for n in self._nodes if n.role == NodeRole.WORKER]

    @property
    def groups(self) -> Dict[str, List[str]]:
        control_plane = [n.id for n in self.control_plane]
        return {
            'kube_control_plane': control_plane,
            'kube_node': [n.id for n in self.workers],
            'etcd': list(control_plane),
        }

    def host_entries(self) -> List[Tuple[str, str]]:
        """Address to logical id pairs for every node."""
        return [(n.address, n.id) for n in self._nodes]

    def get(self, node_id: str) -> Node:
        for node in self._nodes:
            if node.id == node_id:
                return node
        raise KeyError(node_id)

    def __iter__(self):
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)


class ContainerRuntime(str, Enum):
    DOCKER = 'docker'
    CONTAINERD = 'containerd'
    PODMAN = 'podman'
    NERDCTL = 'nerdctl'
    NONE = 'none'


_VERSION_RE = re.compile(r'(\d+)\.(\d+)(?:\.(\d+))?')


@dataclass(frozen=True, order=True)
class Version:
    major: int
    minor: int
    patch: int = 0

    @classmethod
    def parse(cls, text: str) -> 'Version':
        """Parse the first ``X.Y[.Z]`` found in text (e.g. ``Python 3.11.4``)."""
        match = _VERSION_RE.search(text or "")
        if not match:
            raise ValueError(f"No version found in {text!r}")
        major, minor, patch = match.groups()
        return cls(int(major), int(minor), int(patch or 0))

    @property
    def short(self) -> str:
        return f"{self.major}.{self.minor}"

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True)
class InterpreterInfo:
    command: str
    version: Optional[Version] = None


@dataclass(frozen=True)
class EnvironmentCapabilities:
    """Host capabilities detected once at the start of a phase."""
    container_runtime: ContainerRuntime = ContainerRuntime.NONE
    interpreter: Optional[InterpreterInfo] = None


class BundleComponent(str, Enum):
    SOURCE = 'source'
    RUNTIME_DEPS = 'runtime_deps'
    IMAGES = 'images'
    REGISTRY_SNAPSHOT = 'registry_snapshot'
    FILES = 'files'
    OS_PACKAGES_DEB = 'os_packages_deb'
    OS_PACKAGES_RPM = 'os_packages_rpm'
    DOCS = 'docs'


BUNDLE_MANIFEST = "bundle.yaml"


class ArtifactBundle:
    """Record of the components that were actually produced for a bundle."""

    def __init__(self, version: str, components: Optional[Dict[BundleComponent, Path]] = None):
        self.version = version
        self._components: Dict[BundleComponent, Path] = dict(components or {})
        self.archive: Optional[Path] = None

    @property
    def archive_name(self) -> str:
        return f"kubespray-offline-{self.version}.tar.gz"

    @property
    def components(self) -> List[BundleComponent]:
        return [c for c in BundleComponent if c in self._components]

    @property
    def sealed(self) -> bool:
        return self.archive is not None

    def include(self, component: BundleComponent, path: Path, pattern: str = "*") -> bool:
        """Add a component if its output exists and is non-empty.

        Returns:
            bool: True if the component was recorded
        """
        if self.sealed:
            raise BundleError(f"Bundle {self.version} is already archived")
        if not has_content(Path(path), pattern):
            logger.warning(f"⚠️  Component '{component.value}' produced no output at {path}; excluded from bundle")
            self._components.pop(component, None)
            return False
        self._components[component] = Path(path)
        logger.info(f"✅ Component '{component.value}' ready: {path}")
        return True

    def has(self, component: BundleComponent) -> bool:
        return component in self._components

    def path(self, component: BundleComponent) -> Optional[Path]:
        return self._components.get(component)

    def seal(self, archive: Path) -> None:
        self.archive = Path(archive)

    def manifest(self) -> Dict[str, Any]:
        return {'version': self.version, 'components': [c.value for c in self.components]}

    @classmethod
    def load_manifest(cls, path: Path, base_dir: Optional[Path] = None) -> 'ArtifactBundle':
        """Rebuild a bundle record from a ``bundle.yaml`` written at prepare time."""
        path = Path(path)
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise BundleError(f"Cannot read bundle manifest {path}: {e}")
        base_dir = Path(base_dir) if base_dir else path.parent
        bundle = cls(str(data.get('version', '')))
        for name in data.get('components', []):
            try:
                component = BundleComponent(name)
            except ValueError:
                logger.warning(f"Ignoring unknown bundle component '{name}'")
                continue
            bundle._components[component] = base_dir
        return bundle


class NodeState(str, Enum):
    NOT_STARTED = 'not_started'
    PARTIAL = 'partial'
    CONVERGED = 'converged'
    FAILED = 'failed'


@dataclass
class FleetState:
    """Per-node, per-stage progress of an install run."""
    stages: Dict[str, Dict[str, str]] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    updated_at: float = field(default_factory=time.time)

    def mark(self, node_id: str, stage: str, state: NodeState, error: Optional[str] = None) -> None:
        self.stages.setdefault(node_id, {})[stage] = state.value
        if error:
            self.errors[node_id] = error
        elif state == NodeState.CONVERGED:
            self.errors.pop(node_id, None)
        self.updated_at = time.time()

    def stage_state(self, node_id: str, stage: str) -> NodeState:
        return NodeState(self.stages.get(node_id, {}).get(stage, NodeState.NOT_STARTED.value))

    def node_state(self, node_id: str, stages: Sequence[str]) -> NodeState:
        """Overall state of a node across the given stages."""
        states = [self.stage_state(node_id, s) for s in stages]
        if any(s == NodeState.FAILED for s in states):
            return NodeState.FAILED
        if states and all(s == NodeState.CONVERGED for s in states):
            return NodeState.CONVERGED
        if all(s == NodeState.NOT_STARTED for s in states):
            return NodeState.NOT_STARTED
        return NodeState.PARTIAL

    @classmethod
    def load(cls, path: Path) -> 'FleetState':
        path = Path(path)
        if not path.exists():
            return cls()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable fleet state {path}: {e}")
            return cls()
        return cls(
            stages=data.get('stages', {}),
            errors=data.get('errors', {}),
            updated_at=data.get('updated_at', time.time()),
        )

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {'stages': self.stages, 'errors': self.errors, 'updated_at': self.updated_at}
        path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")


@dataclass
class PreconditionReport:
    node_id: str
    installed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class VerificationReport:
    node_id: str
    nodes: str = ''
    system_pods: str = ''
    version: str = ''
    warnings: List[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.warnings and 'NotReady' not in self.nodes
