"""CLI interface for twitter-bookmark-sync.

Commands:
    setup       - Configure Twitter auth credentials
    sync        - Sync bookmarks into the local store
    status      - Show session, endpoint and sync status
    events      - List (or drain) queued bookmark mutation events
    discover    - Fill missing GraphQL query IDs
    catalog     - List observed GraphQL endpoints
    unbookmark  - Remove a bookmark locally and on x.com
    reset       - Forget the stored session, query IDs and bookmarks
"""

import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path

import click

from .config import (
    CONFIG_FILE,
    AppConfig,
    AuthConfig,
    config_exists,
    load_config,
    save_config,
)
from .engine import Engine
from .logging_config import setup_logging
from .store import LAST_RECONCILE_KEY, LAST_SOFT_SYNC_KEY, LAST_SYNC_KEY


def _require_config(config_path: Path) -> AppConfig:
    if not config_exists(config_path):
        click.echo(
            "Error: No config found. Run 'twitter-bookmark-sync setup' first.",
            err=True,
        )
        sys.exit(1)
    return load_config(config_path)


async def _open_engine(config: AppConfig, capture_raw: bool = False) -> Engine:
    engine = Engine.from_config(config, capture_raw=capture_raw)
    await engine.seed_from_config(config)
    return engine


def _format_time(value) -> str:
    if not value:
        return "never"
    return datetime.fromtimestamp(float(value)).strftime("%Y-%m-%d %H:%M")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--config", type=click.Path(), default=None, help="Config file path")
@click.pass_context
def main(ctx, verbose, config):
    """Twitter/X Bookmark Sync — Mirror your bookmarks locally."""
    setup_logging(debug=verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else CONFIG_FILE


@main.command()
@click.option(
    "--query-id-only",
    is_flag=True,
    help="Only update the GraphQL query ID (keep existing auth)",
)
@click.pass_context
def setup(ctx, query_id_only):
    """Configure Twitter authentication credentials."""
    config_path = ctx.obj["config_path"]

    if query_id_only:
        if not config_exists(config_path):
            click.echo("Error: No config found. Run setup without --query-id-only first.", err=True)
            sys.exit(1)
        config = load_config(config_path)
        click.echo("Update GraphQL Query ID")
        click.echo("=" * 40)
        click.echo("Open x.com/i/bookmarks → DevTools → Network → filter 'Bookmarks'")
        click.echo("Copy the ID between /graphql/ and /Bookmarks in the request URL.")
        click.echo()
        config.query_id = click.prompt("query_id")
        save_config(config, config_path)
        click.echo(f"\nQuery ID updated in {config_path}")
        return

    click.echo("Twitter Bookmark Sync — Setup")
    click.echo("=" * 40)
    click.echo()
    click.echo("You need your Twitter/X session cookies.")
    click.echo("To get them:")
    click.echo("  1. Open x.com in your browser and log in")
    click.echo("  2. Open DevTools (F12) -> Application -> Cookies -> https://x.com")
    click.echo("  3. Copy the values of 'auth_token', 'ct0' and (optionally) 'twid'")
    click.echo()

    auth_token = click.prompt("auth_token", hide_input=True)
    ct0 = click.prompt("ct0", hide_input=True)
    twid = click.prompt("twid", default="", show_default=False)

    click.echo()
    click.echo("(Optional) GraphQL query ID — press Enter to discover it automatically.")
    query_id = click.prompt("query_id", default="", show_default=False)

    config = AppConfig(
        auth=AuthConfig(auth_token=auth_token, ct0=ct0, twid=twid or None),
        query_id=query_id or None,
    )

    save_config(config, config_path)
    click.echo(f"\nConfig saved to {config_path}")
    click.echo("Run 'twitter-bookmark-sync sync' to download your bookmarks.")


@main.command()
@click.option("--full", "mode", flag_value="full", help="Walk every page and drop bookmarks removed remotely")
@click.option("--soft", "mode", flag_value="soft", help="Quick check of the newest page only")
@click.option(
    "--dump-raw",
    type=click.Path(),
    default=None,
    help="Save raw API JSON responses to file for debugging",
)
@click.pass_context
def sync(ctx, mode, dump_raw):
    """Sync bookmarks into the local store."""
    config = _require_config(ctx.obj["config_path"])

    async def run():
        engine = await _open_engine(config, capture_raw=bool(dump_raw))
        try:
            await engine.run_maintenance()
            await engine.sync.apply_bookmark_events()
            if mode == "soft":
                outcome = await engine.sync.soft_sync(force=True)
            elif mode == "full":
                outcome = await engine.sync.hard_sync(full=True)
            else:
                outcome = await engine.sync.hard_sync()
            return outcome, len(engine.sync.bookmarks), list(engine.client.raw_responses)
        finally:
            await engine.close()

    click.echo("Syncing bookmarks from Twitter/X...")
    try:
        outcome, total, raw_responses = asyncio.run(run())
    except RuntimeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if dump_raw:
        dump_path = Path(dump_raw)
        dump_path.write_text(
            json.dumps({"raw_api_responses": raw_responses}, indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
        click.echo(f"Raw API responses saved to {dump_path}")

    if outcome.mode == "skipped":
        click.echo("Sync skipped: another sync is running or it ran recently.")
        return

    click.echo(
        f"{outcome.mode.capitalize()} sync: {outcome.new_count} new, "
        f"{outcome.stale_count} removed, {outcome.pages_requested} page(s)."
    )
    click.echo(f"Local bookmarks: {total}")

    if outcome.error:
        if outcome.aborted:
            click.echo("Sync timed out; partial progress was kept. Run sync again.", err=True)
        click.echo(f"Error: {outcome.error}", err=True)
        sys.exit(1)


@main.command()
@click.pass_context
def status(ctx):
    """Show session, endpoint and sync status."""
    config_path = ctx.obj["config_path"]
    has_config = config_exists(config_path)

    click.echo("Twitter Bookmark Sync — Status")
    click.echo("=" * 40)
    click.echo(f"Config: {'Found' if has_config else 'Not configured'} ({config_path})")

    if not has_config:
        click.echo("\nRun 'twitter-bookmark-sync setup' to get started.")
        return

    config = load_config(config_path)

    async def run():
        engine = await _open_engine(config)
        try:
            auth = await engine.auth.check_auth()
            marks = await engine.store.get([LAST_SYNC_KEY, LAST_RECONCILE_KEY, LAST_SOFT_SYNC_KEY])
            events = await engine.events.get()
            bookmarks = await engine.sync.load()
            return auth, marks, len(events), len(bookmarks)
        finally:
            await engine.close()

    auth, marks, pending_events, total = asyncio.run(run())
    click.echo(f"Session: {'Captured' if auth.has_auth else 'Missing'}")
    click.echo(f"User ID: {auth.user_id or 'unknown'}")
    click.echo(f"Bookmarks query ID: {'Known' if auth.has_query_id else 'Not yet resolved'}")
    click.echo(f"Local bookmarks: {total}")
    click.echo(f"Pending events: {pending_events}")
    click.echo(f"Last sync: {_format_time(marks.get(LAST_SYNC_KEY))}")
    click.echo(f"Last full sync: {_format_time(marks.get(LAST_RECONCILE_KEY))}")
    click.echo(f"Last soft sync: {_format_time(marks.get(LAST_SOFT_SYNC_KEY))}")


@main.command()
@click.option("--drain", is_flag=True, help="Remove the events after listing them")
@click.pass_context
def events(ctx, drain):
    """List queued bookmark mutation events."""
    config = _require_config(ctx.obj["config_path"])

    async def run():
        engine = Engine.from_config(config)
        try:
            return await (engine.events.drain() if drain else engine.events.get())
        finally:
            await engine.close()

    queued = asyncio.run(run())
    if not queued:
        click.echo("No pending bookmark events.")
        return
    for event in queued:
        click.echo(
            f"{_format_time(event.at)}  {event.type.value:<15} "
            f"{event.tweet_id or '-':<20} {event.source}"
        )
    if drain:
        click.echo(f"Drained {len(queued)} event(s).")


@main.command()
@click.pass_context
def discover(ctx):
    """Fill missing GraphQL query IDs from x.com's JS bundles."""
    config = _require_config(ctx.obj["config_path"])

    async def run():
        engine = await _open_engine(config)
        try:
            found = await engine.resolver.discover_all_missing()
            bookmarks_id = await engine.resolver.resolve("Bookmarks")
            return found, bookmarks_id
        finally:
            await engine.close()

    found, bookmarks_id = asyncio.run(run())
    for operation, query_id in sorted(found.items()):
        click.echo(f"Discovered {operation}: {query_id}")
    if not found:
        click.echo("No missing query IDs were discovered.")
    if not bookmarks_id:
        click.echo("Error: Could not resolve the Bookmarks query ID.", err=True)
        sys.exit(1)


@main.command()
@click.option("--operation", default=None, help="Only show entries for this operation")
@click.pass_context
def catalog(ctx, operation):
    """List GraphQL endpoints observed on x.com."""
    config = _require_config(ctx.obj["config_path"])

    async def run():
        engine = Engine.from_config(config)
        try:
            if operation:
                return await engine.catalog.entries_for(operation)
            return await engine.catalog.entries()
        finally:
            await engine.close()

    entries = asyncio.run(run())
    if not entries:
        click.echo("No GraphQL endpoints observed yet.")
        return
    for entry in sorted(entries, key=lambda e: e.last_seen, reverse=True):
        click.echo(
            f"{entry.operation:<30} {entry.query_id:<26} "
            f"seen {entry.seen_count}x, last {_format_time(entry.last_seen)}"
        )


@main.command()
@click.argument("tweet_id")
@click.pass_context
def unbookmark(ctx, tweet_id):
    """Remove a bookmark locally and on x.com."""
    config = _require_config(ctx.obj["config_path"])

    async def run():
        engine = await _open_engine(config)
        try:
            return await engine.sync.unbookmark(tweet_id)
        finally:
            await engine.close()

    error = asyncio.run(run())
    if error:
        click.echo(f"Removed locally, but x.com rejected the request: {error}", err=True)
        sys.exit(1)
    click.echo(f"Removed bookmark {tweet_id}.")


@main.command()
@click.confirmation_option(prompt="Forget the stored session, query IDs and local bookmarks?")
@click.pass_context
def reset(ctx):
    """Forget the stored session, query IDs and bookmarks."""
    config = _require_config(ctx.obj["config_path"])

    async def run():
        engine = Engine.from_config(config)
        try:
            await engine.forget_everything()
        finally:
            await engine.close()

    asyncio.run(run())
    click.echo("State cleared. Run 'twitter-bookmark-sync sync' to start over.")
