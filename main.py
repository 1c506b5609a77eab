#!/usr/bin/env python3
"""
FeedKeeper - Feed Synchronization Engine
========================================

Main application entry point with CLI interface.

Usage:
    python main.py --help                          # Show all commands
    python main.py check-config                    # Validate configuration
    python main.py init-db                         # Initialize database
    python main.py fetch URL [URL...]              # Fetch specific feeds
    python main.py fetch                           # Fetch every stored feed
    python main.py purge --max-age-days 30         # Delete old archived items
    python main.py show URL                        # Show a feed and its items
"""

import sys
import re
import json
import signal
import asyncio
from datetime import timedelta
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent))

from feedkeeper.config.settings import load_settings, FeedKeeperSettings
from feedkeeper.database.connection import DatabaseConnection
from feedkeeper.database.schema import DatabaseSchema
from feedkeeper.database.models import Outcome
from feedkeeper.processing.scheduler import FetchScheduler
from feedkeeper.processing.results import RunSummary
from feedkeeper.storage.archival_store import ArchivalStore
from feedkeeper.utils.logging import configure_application_logging, get_logger_for_component
from feedkeeper.utils.exceptions import ConfigurationError, FeedKeeperError, get_user_friendly_message
from feedkeeper.utils.timestamps import utc_now
from feedkeeper.utils.validators import URLValidator

console = Console()
logger = get_logger_for_component("cli")

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}

OUTCOME_STYLES = {
    Outcome.COMMITTED: "green",
    Outcome.NOT_MODIFIED: "cyan",
    Outcome.SKIPPED: "dim",
    Outcome.FAILED: "red",
}


def parse_duration(value: Optional[str]) -> Optional[float]:
    """Parse durations like ``90``, ``30m``, ``1h`` or ``2d`` into seconds."""
    if value is None:
        return None
    match = _DURATION_RE.match(value)
    if not match:
        raise click.BadParameter(f"invalid duration {value!r} (use e.g. 90, 30m, 1h, 2d)")
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[unit.lower()]


def _exit_with_error(error: FeedKeeperError, operation: str) -> None:
    """Log the technical error, print its short message and exit 1."""
    logger.error(f"{operation} failed: {error}", extra=error.to_dict())
    console.print(f"[bold red]❌ {get_user_friendly_message(error)}[/bold red]")
    sys.exit(1)


def _bootstrap(ctx) -> FeedKeeperSettings:
    """Load settings and configure logging, exiting on configuration errors."""
    overrides = {}
    if ctx.obj.get('database'):
        overrides['database'] = {'path': ctx.obj['database']}
    if ctx.obj.get('debug'):
        overrides['debug'] = True

    try:
        settings = load_settings(**overrides)
    except ConfigurationError as e:
        # Logging is not configured yet
        console.print(f"[bold red]❌ {get_user_friendly_message(e)}[/bold red]")
        sys.exit(1)

    configure_application_logging(
        log_level=settings.get_effective_log_level(),
        log_file=settings.logging.file_path,
        enable_console=settings.logging.console_logging,
        structured_logging=settings.logging.structured_logging,
        max_file_size_mb=settings.logging.max_file_size_mb,
        backup_count=settings.logging.backup_count,
    )
    return settings


def _open_store(settings: FeedKeeperSettings) -> ArchivalStore:
    """Create the schema if needed and return a store handle."""
    DatabaseSchema(settings.database.path).create_tables()
    db = DatabaseConnection(settings.database.path, pool_size=settings.database.pool_size)
    return ArchivalStore(db)


@click.group(invoke_without_command=True)
@click.option('--database', '-d', help='SQLite database path (overrides FEEDKEEPER_DATABASE__PATH)')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.pass_context
def cli(ctx, database, debug):
    """FeedKeeper - feed synchronization engine."""
    ctx.ensure_object(dict)
    ctx.obj['database'] = database
    ctx.obj['debug'] = debug

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.pass_context
def check_config(ctx):
    """Validate configuration and environment variables."""
    console.print("[bold blue]🔧 Checking FeedKeeper Configuration[/bold blue]")

    settings = _bootstrap(ctx)

    table = Table(title="Configuration Status")
    table.add_column("Section", style="cyan")
    table.add_column("Details")

    fetch = settings.fetch
    deadline = f"{fetch.run_deadline_seconds:.0f}s" if fetch.run_deadline_seconds else "none"
    table.add_row(
        "Fetch",
        f"concurrency={fetch.concurrency}, timeout={fetch.timeout_seconds:.0f}s, "
        f"max_age={fetch.max_age_seconds:.0f}s, max_items={fetch.max_items}, deadline={deadline}",
    )
    table.add_row(
        "Purge",
        f"max_age_days={settings.purge.max_age_days}, min_items_keep={settings.purge.min_items_keep}, "
        f"vacuum={'no' if settings.purge.skip_vacuum else 'yes'}",
    )
    table.add_row("Database", f"{settings.database.path} (pool={settings.database.pool_size})")
    table.add_row(
        "Logging",
        f"level={settings.get_effective_log_level()}, file={settings.logging.file_path or 'none'}, "
        f"structured={settings.logging.structured_logging}",
    )
    table.add_row(
        "Unfurl",
        f"enabled={settings.unfurl.enabled}, concurrency={settings.unfurl.concurrency}, "
        f"queue={settings.unfurl.queue_size}",
    )

    console.print(table)
    console.print("[bold green]✅ Configuration is valid[/bold green]")


@cli.command()
@click.pass_context
def init_db(ctx):
    """Initialize database with schema."""
    console.print("[bold blue]🗄️ Initializing FeedKeeper Database[/bold blue]")

    settings = _bootstrap(ctx)
    schema = DatabaseSchema(settings.database.path)
    schema.create_tables()

    if not schema.verify_schema():
        console.print("[bold red]❌ Database schema verification failed[/bold red]")
        sys.exit(1)

    console.print("[bold green]✅ Database initialized successfully![/bold green]")

    db = DatabaseConnection(settings.database.path, pool_size=1)
    try:
        info = db.get_database_info()
    finally:
        db.close_all_connections()

    info_table = Table(title="Database Information")
    info_table.add_column("Property", style="cyan")
    info_table.add_column("Value", style="green")

    info_table.add_row("Database Path", settings.database.path)
    info_table.add_row("Size", f"{info['database_size_mb']:.2f} MB")
    info_table.add_row("Feeds", str(info['table_counts']['feeds']))
    info_table.add_row("Items", str(info['table_counts']['items']))
    info_table.add_row("Archived Items", str(info['archived_items']))

    console.print(info_table)


@cli.command()
@click.argument('urls', nargs=-1)
@click.option('--force', is_flag=True, help='Ignore cache validators and the max-age skip')
@click.option('--max-age', default=None, help='Skip feeds fetched within this duration (e.g. 30m, 1h)')
@click.option('--concurrency', type=int, default=None, help='Feeds fetched in parallel')
@click.option('--timeout', type=float, default=None, help='Per-feed timeout in seconds')
@click.option('--max-items', type=int, default=None, help='Items kept per feed (0 means all)')
@click.option('--deadline', default=None, help='Overall run deadline (e.g. 5m)')
@click.option('--remove-missing', is_flag=True, help='Delete stored feeds not among the given URLs')
@click.option('--json', 'as_json', is_flag=True, help='Print the run summary as JSON')
@click.pass_context
def fetch(ctx, urls, force, max_age, concurrency, timeout, max_items, deadline, remove_missing, as_json):
    """Fetch feeds (all stored feeds when no URL is given)."""
    settings = _bootstrap(ctx)
    store = _open_store(settings)

    feed_urls = list(urls) or store.get_feed_urls()
    if not feed_urls:
        console.print("[yellow]No feeds to fetch. Pass feed URLs or add feeds first.[/yellow]")
        return

    if remove_missing and not urls:
        console.print("[yellow]--remove-missing needs explicit feed URLs; ignoring it[/yellow]")
        remove_missing = False

    try:
        scheduler = FetchScheduler.from_settings(
            store,
            settings,
            force=force or None,
            max_age_seconds=parse_duration(max_age),
            concurrency=concurrency,
            timeout_seconds=timeout,
            max_items=max_items,
        )
    except ConfigurationError as e:
        _exit_with_error(e, "Scheduler setup")

    run_deadline = parse_duration(deadline)
    if run_deadline is None:
        run_deadline = settings.fetch.run_deadline_seconds

    summary = asyncio.run(_run_scheduler(scheduler, feed_urls, run_deadline))

    if remove_missing:
        try:
            summary.removed_feeds = store.purge_orphaned_feeds(o.url for o in summary.outcomes)
        except FeedKeeperError as e:
            _exit_with_error(e, "Removing feeds")

    if as_json:
        click.echo(json.dumps(summary.to_dict(), indent=2))
    else:
        _print_summary(summary)

    sys.exit(summary.exit_code)


async def _run_scheduler(scheduler: FetchScheduler, feed_urls, deadline: Optional[float]) -> RunSummary:
    """Run the scheduler, turning SIGINT/SIGTERM into a graceful cancel."""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = []

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel_event.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Signal handlers are unavailable on this platform/thread.
            pass

    try:
        return await scheduler.run(feed_urls, deadline=deadline, cancel_event=cancel_event)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def _print_summary(summary: RunSummary) -> None:
    table = Table(title="Fetch Results")
    table.add_column("Feed", style="cyan", overflow="fold")
    table.add_column("Outcome")
    table.add_column("New", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Archived", justify="right")
    table.add_column("Resurrected", justify="right")
    table.add_column("Error", overflow="fold")

    for outcome in summary.outcomes:
        style = OUTCOME_STYLES.get(outcome.outcome, "")
        table.add_row(
            outcome.url,
            f"[{style}]{outcome.outcome.value}[/{style}]" if style else outcome.outcome.value,
            str(outcome.items_inserted),
            str(outcome.items_updated),
            str(outcome.items_archived),
            str(outcome.items_resurrected),
            outcome.error_message or "",
        )

    console.print(table)
    console.print(
        f"\n[bold]Summary:[/bold] {summary.total_feeds} feeds, "
        f"{summary.committed} committed, {summary.not_modified} not modified, "
        f"{summary.skipped} skipped, {summary.failed} failed "
        f"in {summary.duration_seconds:.1f}s"
    )
    console.print(
        f"Items: {summary.items_inserted} new, {summary.items_updated} updated, "
        f"{summary.items_archived} archived, {summary.items_resurrected} resurrected"
    )
    if summary.removed_feeds:
        console.print(f"Removed feeds: {summary.removed_feeds}")
    if summary.cancelled:
        console.print("[yellow]⚠️ Run was interrupted; unfinished feeds are reported as failed[/yellow]")
    if summary.all_failed:
        console.print("[bold red]❌ Every feed failed[/bold red]")


@cli.command()
@click.option('--max-age-days', type=int, default=None, help='Delete items archived longer ago than this')
@click.option('--min-items-keep', type=int, default=None, help='Newest items per feed protected from purge')
@click.option('--skip-vacuum', is_flag=True, help='Skip VACUUM after purging')
@click.pass_context
def purge(ctx, max_age_days, min_items_keep, skip_vacuum):
    """Delete archived items older than the retention period."""
    console.print("[bold blue]🧹 FeedKeeper Purge[/bold blue]")

    settings = _bootstrap(ctx)
    store = _open_store(settings)

    days = max_age_days if max_age_days is not None else settings.purge.max_age_days
    keep = min_items_keep if min_items_keep is not None else settings.purge.min_items_keep
    if days < 0 or keep < 0:
        console.print("[bold red]❌ --max-age-days and --min-items-keep must not be negative[/bold red]")
        sys.exit(1)

    cutoff = utc_now() - timedelta(days=days)

    try:
        deleted = store.purge_archived(cutoff, min_items_keep=keep)
        console.print(f"Deleted {deleted} archived items archived before {cutoff:%Y-%m-%d %H:%M} UTC")

        if deleted and not (skip_vacuum or settings.purge.skip_vacuum):
            store.vacuum()
            console.print("Database vacuumed")
    except FeedKeeperError as e:
        _exit_with_error(e, "Purge")

    console.print("[bold green]✅ Purge complete[/bold green]")


@cli.command()
@click.argument('url')
@click.option('--limit', type=int, default=20, help='Maximum items to show')
@click.option('--active-only', is_flag=True, help='Hide archived items')
@click.pass_context
def show(ctx, url, limit, active_only):
    """Show a stored feed and its newest items."""
    settings = _bootstrap(ctx)
    store = _open_store(settings)

    try:
        url = URLValidator.validate_feed_url(url)
        feed = store.get_feed(url)
    except FeedKeeperError as e:
        _exit_with_error(e, "Show")

    if feed is None:
        console.print(f"[bold red]❌ Feed not found: {url}[/bold red]")
        sys.exit(1)

    info_table = Table(title=feed.title or feed.url)
    info_table.add_column("Property", style="cyan")
    info_table.add_column("Value", overflow="fold")

    info_table.add_row("URL", feed.url)
    info_table.add_row("Link", feed.link or "")
    info_table.add_row("Last fetched", str(feed.last_fetched_at or "never"))
    info_table.add_row("Last success", str(feed.last_success_at or "never"))
    info_table.add_row("Last outcome", feed.last_outcome.value if feed.last_outcome else "")
    info_table.add_row("HTTP status", str(feed.last_status or ""))
    info_table.add_row("ETag", feed.etag or "")
    info_table.add_row("Last-Modified", feed.last_modified or "")
    info_table.add_row("Errors", f"{feed.error_count} {feed.last_error or ''}".strip())
    console.print(info_table)

    items = store.get_items_for_feed(url, limit=limit, include_archived=not active_only)

    items_table = Table(title=f"Items ({len(items)})")
    items_table.add_column("Published")
    items_table.add_column("Title", overflow="fold")
    items_table.add_column("Status")
    items_table.add_column("First seen")

    for item in items:
        items_table.add_row(
            item.published_at.strftime("%Y-%m-%d %H:%M") if item.published_at else "-",
            item.title or item.link or item.guid,
            f"[dim]{item.status.value}[/dim]" if item.is_archived() else item.status.value,
            item.first_seen.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(items_table)


if __name__ == "__main__":
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]👋 FeedKeeper interrupted by user[/yellow]")
        sys.exit(130)
