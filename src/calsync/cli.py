"""CLI for calsync: migrations, feed syncs, and recurrence conversion utilities."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any

import click

from calsync.config import CalsyncConfig, load_config
from calsync.core.logging import configure_logging
from calsync.core.telemetry import init_telemetry
from calsync.db import Database
from calsync.errors import CalsyncError, ConfigError, short_error_message
from calsync.feeds import FeedSyncService
from calsync.fetcher import PagedFetcher
from calsync.migrations import run_migrations
from calsync.providers import PROVIDER_TYPES, ProviderClient
from calsync.recurrence import to_internal_rule, to_native_pattern, validate_rule
from calsync.repository import PostgresEventRepository, PostgresFeedRepository
from calsync.sync import SyncOrchestrator, SyncResult

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("calsync.toml")

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to calsync.toml (or the directory containing it)",
)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """calsync: mirror remote calendars into PostgreSQL."""


def _load(config_path: Path) -> CalsyncConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
    )
    return config


def _database(config: CalsyncConfig) -> Database:
    return Database.from_env(
        config.database.name,
        schema=config.database.schema,
        min_pool_size=config.database.min_pool_size,
        max_pool_size=config.database.max_pool_size,
    )


@cli.command()
@_config_option
def migrate(config_path: Path) -> None:
    """Create the database if needed and apply schema migrations."""
    config = _load(config_path)
    db = _database(config)

    async def _migrate() -> None:
        await db.provision()
        await run_migrations(db.url(), schema=config.database.schema)

    asyncio.run(_migrate())
    click.echo(f"Migrations applied to {db.db_name}")


@cli.command()
@_config_option
def feeds(config_path: Path) -> None:
    """List the feeds declared in the configuration."""
    config = _load(config_path)
    if not config.feeds:
        click.echo("No feeds configured")
        return
    click.echo(f"{'ID':<24} {'Enabled':<8} {'Calendar':<40} {'Name'}")
    click.echo("-" * 90)
    for feed in config.feeds:
        enabled = "yes" if feed.enabled else "no"
        click.echo(f"{feed.id:<24} {enabled:<8} {feed.calendar_id:<40} {feed.name}")


@cli.command()
@click.argument("feed_id", required=False)
@click.option("--full", is_flag=True, help="Discard the stored token and resync from scratch")
@_config_option
def sync(feed_id: str | None, full: bool, config_path: Path) -> None:
    """Sync FEED_ID (or every enabled feed) once and print the result."""
    config = _load(config_path)
    if feed_id is not None:
        try:
            config.feed(feed_id)
        except ConfigError as exc:
            click.echo(str(exc), err=True)
            sys.exit(1)

    try:
        results = asyncio.run(_run_sync(config, feed_id, force_full=full))
    except CalsyncError as exc:
        click.echo(f"Sync failed: {short_error_message(exc)}", err=True)
        sys.exit(1)

    failed = False
    for name, result in results.items():
        if isinstance(result, SyncResult):
            click.echo(json.dumps(result.summary(), sort_keys=True))
        else:
            failed = True
            click.echo(f"{name}: sync failed: {short_error_message(result)}", err=True)
    if failed:
        sys.exit(1)


def build_provider_client(config: CalsyncConfig) -> ProviderClient:
    """Instantiate the client registered for ``provider.type``."""
    client_cls = PROVIDER_TYPES[config.provider.type]
    return client_cls(
        access_token=config.provider.access_token,
        base_url=config.provider.base_url,
        page_size=config.sync.page_size,
        timeout_seconds=config.provider.timeout_seconds,
        max_retries=config.sync.max_retries,
    )


async def _run_sync(
    config: CalsyncConfig,
    feed_id: str | None,
    *,
    force_full: bool,
) -> dict[str, SyncResult | CalsyncError]:
    if not config.provider.access_token:
        raise ConfigError("provider.access_token is required to sync")

    init_telemetry("calsync")
    db = _database(config)
    pool = await db.connect()
    client = build_provider_client(config)
    try:
        events = PostgresEventRepository(pool)
        fetcher = PagedFetcher(
            client,
            window_factory=lambda: config.sync.window(datetime.now(UTC)),
        )
        service = FeedSyncService(
            PostgresFeedRepository(pool),
            events,
            client,
            orchestrator=SyncOrchestrator(client, events, fetcher=fetcher),
        )
        await service.register_feeds(config.feeds)
        if feed_id is None:
            return await service.sync_all(force_full=force_full)
        return {feed_id: await service.sync_feed(feed_id, force_full=force_full)}
    finally:
        await client.aclose()
        await db.close()


@cli.command("rule-to-pattern")
@click.argument("rule")
def rule_to_pattern(rule: str) -> None:
    """Print the provider recurrence descriptor for RULE as JSON."""
    try:
        recurrence = to_native_pattern(rule)
    except CalsyncError as exc:
        click.echo(f"Cannot convert rule: {exc}", err=True)
        sys.exit(1)
    click.echo(json.dumps(recurrence.model_dump(by_alias=True, exclude_none=True), indent=2))


@cli.command("pattern-to-rule")
@click.argument("descriptor")
@click.option(
    "--today",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Reference date used when the range has no start date",
)
def pattern_to_rule(descriptor: str, today: datetime | None) -> None:
    """Print the rule for DESCRIPTOR, a JSON {pattern, range} object."""
    try:
        payload: Any = json.loads(descriptor)
    except json.JSONDecodeError as exc:
        click.echo(f"Invalid JSON: {exc}", err=True)
        sys.exit(1)
    if not isinstance(payload, dict):
        click.echo("Descriptor must be a JSON object", err=True)
        sys.exit(1)
    reference: date | None = today.date() if today is not None else None
    try:
        rule = validate_rule(to_internal_rule(payload, today=reference))
    except CalsyncError as exc:
        click.echo(f"Cannot convert pattern: {exc}", err=True)
        sys.exit(1)
    click.echo(rule)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
