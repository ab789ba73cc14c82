"""Backend configuration command for the consentsync CLI.

Commands:
- configure: Store the backend URL and API key
"""

from __future__ import annotations

import sys

import click

from consentsync.client.cli.config import get_config_file, load_config, save_config
from consentsync.core.config import load_backend_config
from consentsync.core.errors import ConfigurationError


@click.command()
@click.option("--url", required=True, help="Backend URL (e.g., https://project.example.co).")
@click.option("--api-key", required=True, help="Public API key of the backend.")
@click.option("--probe-table", default=None, help="Table used by the health probe.")
@click.option("--archive-rpc", default=None, help="Remote procedure that archives a consent.")
@click.pass_context
def configure(
    ctx: click.Context,
    url: str,
    api_key: str,
    probe_table: str | None,
    archive_rpc: str | None,
) -> None:
    """Store the backend connection settings.

    Environment variables CONSENTSYNC_URL and CONSENTSYNC_API_KEY still
    take precedence over the stored values.
    """
    config_dir = ctx.obj["config_dir"]
    config = load_config(config_dir)
    config.update({"url": url, "api_key": api_key})
    if probe_table:
        config["probe_table"] = probe_table
    if archive_rpc:
        config["archive_rpc"] = archive_rpc

    # Validate before writing anything
    try:
        load_backend_config(config, env={})
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    save_config(config, config_dir)
    click.echo(f"Configuration saved to {get_config_file(config_dir)}")
