#!/usr/bin/env python3
"""Command-line entry point: ``dtp-client ROOM_ID``."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from . import __version__
from .client import EXIT_FAILURE, DtpClient
from .config import ClientConfig, load_config_from_json
from .logger import setup_logging

_LOGGER = logging.getLogger(__name__)


@click.command()
@click.argument("room_id")
@click.option("--debug", "-d", is_flag=True, help="Log every decoded inbound message")
@click.option("--server", "server_url", help="Relay server base URL")
@click.option(
    "--music-dir",
    type=click.Path(file_okay=False),
    help="Directory holding the downloaded track",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON configuration file",
)
@click.version_option(__version__, prog_name="dtp-client")
def cli(
    room_id: str,
    debug: bool,
    server_url: Optional[str],
    music_dir: Optional[str],
    config_path: Optional[Path],
) -> None:
    """Join the listening room ROOM_ID.

    Type "play <url>" to play a track for everyone in the room and "skip"
    to skip it.
    """
    try:
        if config_path is not None:
            config = load_config_from_json(config_path, room_id)
        else:
            config = ClientConfig(room_id=room_id)
        config = config.with_overrides(
            server_url=server_url,
            music_dir=music_dir,
            debug=debug or None,
        )
    except (OSError, ValueError, TypeError) as e:
        click.echo(click.style(f"Invalid configuration: {e}", fg="red"), err=True)
        sys.exit(EXIT_FAILURE)

    setup_logging(debug=config.debug)

    client = DtpClient(config, input_stream=sys.stdin)
    try:
        status = asyncio.run(client.run())
    except KeyboardInterrupt:
        _LOGGER.info("Interrupted")
        sys.exit(130)

    sys.exit(status)


if __name__ == "__main__":
    cli()
