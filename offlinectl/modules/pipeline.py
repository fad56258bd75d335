"""Prepare and install phases, wiring every component together.

Each install stage is gated on the previous one: any exception ends the run.
The fleet state record is saved and SSH connections are closed on every exit
path.
"""
import logging
from typing import Optional

from .bundler import ArtifactBundler
from .capability import CapabilityProbe
from .deploy import DeploymentCoordinator
from .distributor import BundleDistributor
from .fleet import FleetRunner
from .health import VerificationProbe
from .inventory import InventoryModel
from .models import ArtifactBundle, FleetState, FleetTopology, VerificationReport
from .registry import RegistryPublisher
from .remote_state import RemoteStateApplier
from .retry import RetryExecutor, RetryPolicy
from .ssh import ConnectionPool
from .trust import TrustProvisioner
from .utils import run_command

logger = logging.getLogger("offline.pipeline")

PREPARE_COMMANDS = ('git', 'curl')
INSTALL_COMMANDS = ('ssh', 'scp')
NODE_STAGES = ('trust', 'distribute', 'preconditions')


def build_retry_executor(config) -> RetryExecutor:
    return RetryExecutor(RetryPolicy(max_attempts=config.retry.max_attempts))


def build_topology(config) -> FleetTopology:
    config.require_fleet()
    return FleetTopology.from_addresses(config.fleet.control_plane, config.fleet.workers)


class PreparePipeline:
    """Detects capabilities, then builds the bundle."""

    def __init__(self, config, probe: Optional[CapabilityProbe] = None,
                 retry: Optional[RetryExecutor] = None, runner=run_command, bundler_factory=ArtifactBundler):
        self.config = config
        self.probe = probe or CapabilityProbe.from_config(config, runner=runner)
        self.retry = retry or build_retry_executor(config)
        self._runner = runner
        self._bundler_factory = bundler_factory

    def run(self) -> ArtifactBundle:
        logger.info(f"=== Preparing offline bundle for Kubespray {self.config.kubespray_version} ===")
        capabilities = self.probe.detect()
        self.probe.require_commands(PREPARE_COMMANDS)

        bundler = self._bundler_factory(
            self.config,
            interpreter=capabilities.interpreter,
            runtime_probe=self.probe.runtime_probe,
            retry=self.retry,
            runner=self._runner,
        )
        return bundler.prepare()


class InstallPipeline:
    """Trust, distribute, publish, render, converge, deploy, verify."""

    def __init__(self, config, resume: bool = False, probe: Optional[CapabilityProbe] = None,
                 pool: Optional[ConnectionPool] = None, retry: Optional[RetryExecutor] = None,
                 runner=run_command, **components):
        self.config = config
        self.resume = resume
        self.probe = probe or CapabilityProbe.from_config(config, runner=runner)
        self.pool = pool or ConnectionPool.from_config(config)
        self.retry = retry or build_retry_executor(config)
        self._runner = runner

        self.trust = components.get('trust') or TrustProvisioner(config, key_connection=self.pool, retry=self.retry)
        self.distributor = components.get('distributor') or BundleDistributor(config, self.pool, self.retry)
        self.inventory = components.get('inventory') or InventoryModel(config)
        self.applier = components.get('applier') or RemoteStateApplier(config, self.pool)
        self.coordinator = components.get('coordinator') or DeploymentCoordinator(config, runner=runner)
        self.verifier = components.get('verifier') or VerificationProbe(config, self.pool)
        self._publisher = components.get('publisher')

        self.state = FleetState.load(config.state_path) if resume else FleetState()

    def _save_state(self, state: FleetState) -> None:
        try:
            state.save(self.config.state_path)
        except OSError as e:
            logger.warning(f"⚠️  Could not save fleet state: {e}")

    def _log_summary(self, nodes) -> None:
        for node in nodes:
            state = self.state.node_state(node.id, NODE_STAGES)
            error = self.state.errors.get(node.id)
            logger.info(f"  {node.id} ({node.address}): {state.value}" + (f" - {error}" if error else ""))

    def publisher(self) -> RegistryPublisher:
        if self._publisher is None:
            self._publisher = RegistryPublisher(self.config, self.probe.runtime_probe, self.retry, runner=self._runner)
        return self._publisher

    def run(self) -> VerificationReport:
        topology = build_topology(self.config)
        nodes = topology.nodes
        logger.info(
            f"=== Installing Kubernetes {self.config.kube_version} on {len(nodes)} node(s) "
            f"({len(topology.control_plane)} control plane, {len(topology.workers)} worker) ==="
        )

        self.probe.detect()
        self.probe.require_commands(INSTALL_COMMANDS)

        fleet = FleetRunner(
            self.state,
            parallelism=self.config.parallelism,
            fail_fast=self.config.fail_fast,
            resume=self.resume,
            on_change=self._save_state,
        )

        try:
            bundle = self.distributor.unpack_local()

            logger.info("=== [1/6] Establishing passwordless SSH ===")
            # Key pair is created here, before the per-node workers start
            key_type = self.trust.public_key.split()[0]
            logger.debug(f"Using {key_type} key {self.config.fleet.key_path}")
            fleet.run('trust', nodes, self.trust.ensure_trust)

            logger.info("=== [2/6] Distributing bundle ===")
            fleet.run('distribute', nodes, lambda node: self.distributor.distribute(bundle, node))

            logger.info("=== [3/6] Publishing images and files ===")
            publisher = self.publisher()
            publisher.publish(bundle)
            publisher.start_file_server()

            logger.info("=== [4/6] Rendering inventory ===")
            inventory_path = self.inventory.write(topology)

            logger.info("=== [5/6] Applying node preconditions ===")
            entries = topology.host_entries()
            fleet.run('preconditions', nodes, lambda node: self.applier.apply(node, entries))

            logger.info("=== [6/6] Deploying cluster ===")
            self.coordinator.deploy(inventory_path, self.config.kube_version)

            logger.info("=== Verifying cluster ===")
            return self.verifier.verify(topology.control_plane[0])
        finally:
            self._log_summary(nodes)
            self._save_state(self.state)
            self.pool.close_all()
