"""Command-line interface for the Ampache sync application.

This is the main entry point that delegates to command modules.
"""

from pathlib import Path
from typing import Any, Optional

import click

from ..config import get_config
from ..utils.logging_config import configure_third_party_loggers, setup_logging
from .commands import (
    favorites,
    playlist_download,
    resync_command,
    search,
    status,
    sync_command,
)


@click.group()
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
    help="Set logging level",
)
@click.option("--log-file", type=click.Path(), help="Log to file")
@click.pass_context
def cli(ctx: Any, log_level: str, log_file: Optional[str]) -> None:
    """Ampache library sync.

    Keeps a local copy of an Ampache server's library up to date.
    """
    config = get_config()
    setup_logging(
        log_level=log_level,
        log_file=Path(log_file) if log_file else config.log_file,
    )
    configure_third_party_loggers()

    ctx.obj = config


cli.add_command(sync_command)
cli.add_command(resync_command)
cli.add_command(status)
cli.add_command(playlist_download)
cli.add_command(favorites)
cli.add_command(search)


if __name__ == "__main__":
    cli()
