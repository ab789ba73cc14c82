"""Command-line interface for consentsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- configure: Store the backend URL and API key
- status: Show connectivity and cache status
- list: List active or archived consents
- show: Show one consent by id or code
- archive: Archive a consent
- stats: Show dashboard statistics
- watch: Follow changes pushed by the backend
- offline: Switch offline mode on or off
- clear-cache: Drop every cached collection
"""

from __future__ import annotations

import logging

import click

from consentsync.client.cli.config import (
    ENV_HOME,
    get_config_dir,
    get_config_file,
    load_config,
    save_config,
)
from consentsync.client.cli.configure import configure
from consentsync.client.cli.consents import (
    archive,
    list_consents,
    show,
    stats,
    status,
    watch,
)
from consentsync.client.cli.offline import clear_cache, offline


@click.group()
@click.version_option(package_name="consentsync")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False),
    envvar=ENV_HOME,
    default=None,
    help="Directory for config and local state (default: ~/.consentsync).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, data_dir: str | None, verbose: bool) -> None:
    """consentsync - offline-tolerant sync of consent records."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_dir"] = get_config_dir(data_dir)


# Setup
cli.add_command(configure)

# Consent commands
cli.add_command(status)
cli.add_command(list_consents)
cli.add_command(show)
cli.add_command(archive)
cli.add_command(stats)
cli.add_command(watch)

# Local state commands
cli.add_command(offline)
cli.add_command(clear_cache)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    "cli",
    "main",
    "get_config_dir",
    "get_config_file",
    "load_config",
    "save_config",
]
