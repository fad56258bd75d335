import logging

import typer

from offlinectl.commands import OfflineError, fail, load_config
from offlinectl.modules.pipeline import PreparePipeline

logger = logging.getLogger("offline.cli")


def prepare_cmd(ctx: typer.Context):
    """
    Build the offline bundle on a host with internet access.

    Fetches Kubespray, caches its Python dependencies, exports container
    images and binary files, downloads OS packages and writes everything
    into kubespray-offline-<version>.tar.gz.
    """
    try:
        config = load_config(ctx)
        bundle = PreparePipeline(config).run()
    except OfflineError as e:
        fail(ctx, e)

    typer.echo(f"✅ Bundle ready: {bundle.archive}")
    typer.echo(f"   Components: {', '.join(c.value for c in bundle.components)}")
