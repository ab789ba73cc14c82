"""Consent commands for the consentsync CLI.

Commands:
- status: Show connectivity and cache status
- list: List active or archived consents
- show: Show one consent by id or code
- archive: Archive a consent
- stats: Show dashboard statistics
- watch: Follow changes pushed by the backend
"""

from __future__ import annotations

import asyncio

import click

from consentsync.client.cli.session import open_session, run_command
from consentsync.client.orchestrator import SyncOrchestrator, SyncSnapshot
from consentsync.client.records import Consent


def format_consent_line(consent: Consent) -> str:
    """One-line summary used by ``list``."""
    client = consent.client
    return (
        f"{consent.id}  {consent.code}  {consent.created_at[:10]}  "
        f"{client.name} {client.last_name}  {consent.artist_name or '-'}"
    )


async def _refresh(orchestrator: SyncOrchestrator, cached: bool) -> None:
    """Refresh from the backend unless --cached, warning on failure."""
    if cached:
        return
    result = await orchestrator.refresh("cli")
    if result is not None and result.error is not None:
        click.echo(f"Warning: {result.error}; showing cached data.", err=True)


class ChangePrinter:
    """Orchestrator listener printing a line when the summary changes."""

    def __init__(self) -> None:
        self.last: tuple[int, int, bool] | None = None

    def __call__(self, snapshot: SyncSnapshot) -> None:
        summary = (len(snapshot.active), len(snapshot.archived), snapshot.connection_error)
        if summary == self.last:
            return
        self.last = summary
        state = "offline" if snapshot.connection_error else "online"
        click.echo(f"[{state}] {summary[0]} active, {summary[1]} archived consents")


cached_option = click.option(
    "--cached", is_flag=True, help="Use cached data only, do not contact the backend."
)


@click.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show connectivity and cache status."""

    async def run() -> dict[str, object]:
        async with open_session(ctx.obj["config_dir"]) as session:
            connected = await session.monitor.check_connection(force=True)
            return {
                "Backend": session.backend.config.url,
                "Connected": "yes" if connected else "no",
                "Offline mode": "on" if session.flags.offline_mode else "off",
                "Network unreachable": "yes" if session.flags.network_unreachable else "no",
                "Cached active consents": len(session.orchestrator.active),
                "Cached archived consents": len(session.orchestrator.archived),
            }

    for label, value in run_command(run).items():
        click.echo(f"{label}: {value}")


@click.command("list")
@click.option("--archived", is_flag=True, help="List archived consents.")
@cached_option
@click.pass_context
def list_consents(ctx: click.Context, archived: bool, cached: bool) -> None:
    """List consents, newest first."""

    async def run() -> list[Consent]:
        async with open_session(ctx.obj["config_dir"]) as session:
            orchestrator = session.orchestrator
            await _refresh(orchestrator, cached)
            return orchestrator.archived if archived else orchestrator.active

    records = run_command(run)
    if not records:
        click.echo("No consents.")
        return
    for record in records:
        click.echo(format_consent_line(record))


@click.command()
@click.argument("key")
@cached_option
@click.pass_context
def show(ctx: click.Context, key: str, cached: bool) -> None:
    """Show a consent by id or by code (TCF-XXXXX-XXXXX)."""

    async def run() -> Consent | None:
        async with open_session(ctx.obj["config_dir"]) as session:
            orchestrator = session.orchestrator
            found = orchestrator.get_by_id(key) or orchestrator.get_by_code(key)
            if found is None and not cached:
                await _refresh(orchestrator, cached)
                found = orchestrator.get_by_id(key) or orchestrator.get_by_code(key)
            return found

    consent = run_command(run)
    if consent is None:
        raise click.ClickException(f"Consent not found: {key}")

    client = consent.client
    click.echo(f"Id: {consent.id}")
    click.echo(f"Code: {consent.code}")
    click.echo(f"Created: {consent.created_at}")
    click.echo(f"Archived: {'yes' if consent.archived else 'no'}")
    click.echo(f"Artist: {consent.artist_name or '-'}")
    click.echo(f"Client: {client.name} {client.last_name} ({client.age})")
    click.echo(f"National id: {client.national_id}")
    click.echo(f"Phone: {client.phone}")
    click.echo(f"Email: {client.email}")
    if consent.tutor is not None:
        click.echo(f"Tutor: {consent.tutor.name} ({consent.tutor.relationship})")


@click.command()
@click.argument("consent_id")
@click.pass_context
def archive(ctx: click.Context, consent_id: str) -> None:
    """Archive a consent."""

    async def run() -> Consent:
        async with open_session(ctx.obj["config_dir"]) as session:
            orchestrator = session.orchestrator
            if orchestrator.get_by_id(consent_id) is None:
                await _refresh(orchestrator, cached=False)
            return await orchestrator.archive(consent_id)

    consent = run_command(run)
    click.echo(f"Archived consent {consent.id} ({consent.code}).")


@click.command()
@cached_option
@click.pass_context
def stats(ctx: click.Context, cached: bool) -> None:
    """Show statistics over active consents."""

    async def run() -> SyncOrchestrator:
        async with open_session(ctx.obj["config_dir"]) as session:
            await _refresh(session.orchestrator, cached)
            return session.orchestrator

    figures = run_command(run).statistics()

    click.echo(f"Total: {figures.total}")
    click.echo(f"Adults: {figures.adults}")
    click.echo(f"Minors: {figures.minors}")
    if figures.per_month:
        click.echo("Per month:")
        for month, count in figures.per_month:
            click.echo(f"  {month}  {count}")
    if figures.per_artist:
        click.echo("Per artist:")
        for artist, count in figures.per_artist:
            click.echo(f"  {artist}  {count}")


@click.command()
@click.pass_context
def watch(ctx: click.Context) -> None:
    """Keep the cache in sync and print changes until interrupted."""

    async def run() -> None:
        async with open_session(ctx.obj["config_dir"], with_realtime=True) as session:
            session.orchestrator.add_listener(ChangePrinter())
            await session.orchestrator.start()
            click.echo("Watching for changes (Ctrl+C to stop)...")
            await asyncio.Event().wait()

    try:
        run_command(run)
    except KeyboardInterrupt:
        click.echo("Stopped.")
