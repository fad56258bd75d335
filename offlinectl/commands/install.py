import logging
from typing import Optional

import typer

from offlinectl.commands import OfflineError, fail, load_config
from offlinectl.modules.health import VerificationProbe
from offlinectl.modules.inventory import InventoryModel
from offlinectl.modules.pipeline import InstallPipeline, build_topology
from offlinectl.modules.ssh import ConnectionPool

logger = logging.getLogger("offline.cli")


def install_cmd(
    ctx: typer.Context,
    resume: bool = typer.Option(False, "--resume", help="Skip per-node stages already recorded as converged"),
):
    """
    Install the bundle on the configured fleet.

    Establishes SSH trust, distributes the bundle, starts the local registry
    and file server, prepares every node and runs Kubespray.
    """
    try:
        config = load_config(ctx)
        report = InstallPipeline(config, resume=resume).run()
    except OfflineError as e:
        fail(ctx, e)

    typer.echo("✅ Kubernetes cluster deployed")
    if not report.healthy:
        typer.echo("⚠️  Verification reported problems, see the log above")


def inventory_cmd(
    ctx: typer.Context,
    write: bool = typer.Option(False, "--write", "-w", help="Write inventory/mycluster in the Kubespray tree"),
):
    """Render the Kubespray inventory and offline overrides for the configured fleet."""
    try:
        config = load_config(ctx)
        topology = build_topology(config)
        model = InventoryModel(config)
        if write:
            path = model.write(topology)
            typer.echo(f"✅ Inventory written to {path}")
            return
        document = model.render(topology)
    except OfflineError as e:
        fail(ctx, e)

    typer.echo("# hosts.yaml")
    typer.echo(document.to_yaml())


def verify_cmd(
    ctx: typer.Context,
    node_id: Optional[str] = typer.Option(None, "--node", "-n", help="Control-plane node id to query (default: node1)"),
):
    """Query node, kube-system pod and version status from a control-plane node."""
    pool = None
    try:
        config = load_config(ctx)
        topology = build_topology(config)
        node = topology.get(node_id) if node_id else topology.control_plane[0]
        pool = ConnectionPool.from_config(config)
        report = VerificationProbe(config, pool).verify(node)
    except KeyError:
        fail(ctx, OfflineError(f"Unknown node id: {node_id}"))
    except OfflineError as e:
        fail(ctx, e)
    finally:
        if pool is not None:
            pool.close_all()

    if not report.healthy:
        raise typer.Exit(code=1)
