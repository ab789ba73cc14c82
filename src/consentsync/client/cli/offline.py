"""Local state commands for the consentsync CLI.

Commands:
- offline: Switch the persisted offline override on or off
- clear-cache: Drop every cached collection
"""

from __future__ import annotations

import click

from consentsync.client.cache import CacheStore
from consentsync.client.cli.session import open_store
from consentsync.client.store import ConnectivityFlags


@click.command()
@click.argument("state", type=click.Choice(["on", "off"]))
@click.pass_context
def offline(ctx: click.Context, state: str) -> None:
    """Turn offline mode on or off.

    In offline mode no network request is made: connectivity checks
    report "not connected" and realtime subscriptions stay closed.
    """
    store = open_store(ctx.obj["config_dir"])
    try:
        ConnectivityFlags(store).set_offline_mode(state == "on")
    finally:
        store.close()
    click.echo(f"Offline mode {'enabled' if state == 'on' else 'disabled'}.")


@click.command("clear-cache")
@click.pass_context
def clear_cache(ctx: click.Context) -> None:
    """Remove all cached consent data.

    Connectivity flags are kept.
    """
    store = open_store(ctx.obj["config_dir"])
    try:
        CacheStore(store).clear()
    finally:
        store.close()
    click.echo("Cache cleared.")
