import logging
from typing import Optional

import typer

from offlinectl.commands import install, prepare
from offlinectl.logging import setup_logging

app = typer.Typer(help="Prepare and install offline Kubespray bundles.")

app.command("prepare")(prepare.prepare_cmd)
app.command("install")(install.install_cmd)
app.command("inventory")(install.inventory_cmd)
app.command("verify")(install.verify_cmd)


# Global options callback
@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the offlinectl YAML config"),
):
    """offlinectl - offline Kubernetes bundle orchestrator."""
    ctx.obj = {'debug': debug, 'config_path': config}
    setup_logging(debug)
    if debug:
        logging.debug("Debug mode enabled")


if __name__ == "__main__":
    app()
