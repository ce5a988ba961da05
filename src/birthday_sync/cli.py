"""CLI for birthday-sync: run syncs, bulk jobs, retries and cleanups."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import click

from birthday_sync import __version__
from birthday_sync.app import Application, build_application
from birthday_sync.config import AppConfig, ConfigError, load_config
from birthday_sync.core.logging import configure_logging
from birthday_sync.core.telemetry import init_telemetry
from birthday_sync.sync.errors import SyncError

logger = logging.getLogger(__name__)

SERVICE_NAME = "birthday-sync"

T = TypeVar("T")


def _load(config_path: Path | None) -> AppConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)
    configure_logging(config.logging.level, config.logging.format, config.logging.file)
    init_telemetry(SERVICE_NAME)
    return config


def _run(config: AppConfig, action: Callable[[Application], Awaitable[T]]) -> T:
    async def _main() -> T:
        async with build_application(config) as app:
            return await action(app)

    try:
        return asyncio.run(_main())
    except SyncError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to sync.toml (defaults to $BIRTHDAY_SYNC_CONFIG or ./sync.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """birthday-sync: one-way sync of birthday records into Google Calendar."""
    ctx.obj = config_path


@cli.command("init-db")
@click.pass_obj
def init_db(config_path: Path | None) -> None:
    """Create the document table if it does not exist."""
    config = _load(config_path)

    async def _action(app: Application) -> None:
        await app.store.ensure_schema()

    _run(config, _action)
    click.echo("Schema ready")


@cli.command()
@click.argument("record_id")
@click.option("--force", is_flag=True, help="Sync even if nothing relevant changed")
@click.pass_obj
def sync(config_path: Path | None, record_id: str, force: bool) -> None:
    """Sync one record's calendar events."""
    config = _load(config_path)
    outcome = _run(config, lambda app: app.engine.sync_record(record_id, force=force))
    stats = outcome.stats
    click.echo(
        f"{record_id}: {outcome.status} (created={stats.created} updated={stats.updated} "
        f"deleted={stats.deleted} failed={stats.failed})"
    )
    if outcome.message:
        click.echo(f"  {outcome.message}")
    if outcome.status == "error":
        sys.exit(1)


@cli.command()
@click.argument("owner_id")
@click.argument("record_ids", nargs=-1, required=True)
@click.pass_obj
def bulk(config_path: Path | None, owner_id: str, record_ids: tuple[str, ...]) -> None:
    """Create a bulk sync job and run it to completion."""
    config = _load(config_path)

    async def _action(app: Application) -> str:
        ticket = await app.bulk.create_job(owner_id, list(record_ids))
        await app.dispatcher.drain()
        return ticket.job_id

    job_id = _run(config, _action)
    click.echo(f"Bulk job {job_id} finished for {len(record_ids)} record(s)")


@cli.command("retry-failed")
@click.pass_obj
def retry_failed(config_path: Path | None) -> None:
    """Re-sync records whose last sync was partial or failed."""
    config = _load(config_path)
    result = _run(config, lambda app: app.sweep.run())
    click.echo(f"Recovered {result.successes}, still failing {result.failures}")
    for error in result.errors:
        click.echo(f"  {error.item_id}: {error.message}")


@cli.command()
@click.argument("record_id")
@click.pass_obj
def remove(config_path: Path | None, record_id: str) -> None:
    """Delete a record's calendar events and forget its sync state."""
    config = _load(config_path)
    outcome = _run(config, lambda app: app.cleanup.remove_record_sync(record_id))
    click.echo(f"{record_id}: removed {outcome.stats.deleted} event(s)")


@cli.command()
@click.argument("owner_id")
@click.option("--dry-run", is_flag=True, help="Only count the events that would be deleted")
@click.option("--tenant", "tenant_id", default=None, help="Also unlink every record of TENANT")
@click.pass_obj
def cleanup(
    config_path: Path | None, owner_id: str, dry_run: bool, tenant_id: str | None
) -> None:
    """Delete every app-created event on OWNER's calendar."""
    if dry_run and tenant_id:
        raise click.UsageError("--tenant cannot be combined with --dry-run")
    config = _load(config_path)
    if tenant_id:
        result = _run(
            config, lambda app: app.cleanup.cleanup_orphans_and_unlink(owner_id, tenant_id)
        )
    else:
        result = _run(config, lambda app: app.cleanup.cleanup_orphans(owner_id, dry_run=dry_run))
    verb = "would delete" if dry_run else "deleted"
    click.echo(f"Found {result.found}, {verb} {result.deleted}, failed {result.failed}")
