"""CLI command implementations."""
import logging
import traceback

import typer

from offlinectl.config import OfflineConfig
from offlinectl.logging import setup_logging
from offlinectl.modules.errors import OfflineError

logger = logging.getLogger("offline.cli")


def load_config(ctx: typer.Context) -> OfflineConfig:
    """Load the configuration selected by the global options and apply its logging settings."""
    options = ctx.obj or {}
    config = OfflineConfig.load(options.get('config_path'))
    setup_logging(
        debug_mode=options.get('debug', False),
        level=config.logging.level,
        log_file=config.logging.file,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count,
    )
    return config


def fail(ctx: typer.Context, error: Exception) -> None:
    """Log a fatal error and exit with status 1."""
    if (ctx.obj or {}).get('debug'):
        logger.error(f"❌ {error}\n{traceback.format_exc()}")
    else:
        logger.error(f"❌ {error}")
    raise typer.Exit(code=1)


__all__ = ['load_config', 'fail', 'OfflineError']
