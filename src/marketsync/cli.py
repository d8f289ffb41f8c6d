"""CLI interface for marketsync's local store."""

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
from pathlib import Path

import click

from . import __version__
from .config import DATA_DIR, SQLITE_PATH
from .errors import MarketsyncError


def _store_path(ctx: click.Context) -> Path:
    return ctx.obj["db_path"]


def _open_store(ctx: click.Context):
    from .storage import MarketplaceStore

    path = _store_path(ctx)
    if not path.exists():
        raise click.ClickException(
            f"No store found at {path}. Seed one first:\n  marketsync seed fixtures.json"
        )
    return MarketplaceStore(path)


def _run(coro):
    try:
        return asyncio.run(coro)
    except MarketsyncError as exc:
        raise click.ClickException(str(exc))


def _raise_notices(notices):
    if len(notices):
        raise click.ClickException(
            "; ".join(f"{n.title}: {n.description}" if n.description else n.title for n in notices)
        )


@click.group()
@click.version_option(version=__version__, prog_name="marketsync")
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=SQLITE_PATH,
    show_default=True,
    help="Path to the local store",
)
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr")
@click.pass_context
def cli(ctx: click.Context, db_path: Path, verbose: bool):
    """marketsync: live conversations, unread counts and notifications.

    These commands drive the sync layer against a local SQLite store,
    which is handy for trying out roster, thread and badge behaviour
    without the hosted backend.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path


@cli.command()
@click.argument("fixture_path", type=click.Path(exists=True))
@click.option("--force", is_flag=True, help="Replace rows that already exist")
@click.pass_context
def seed(ctx: click.Context, fixture_path: str, force: bool):
    """Seed the local store from a JSON fixture.

    The fixture is an object with optional "users", "products",
    "conversations" (each with its "messages"), "notifications" and
    "favorites" arrays of snake_case rows.

    Example:
        marketsync seed fixtures/demo.json
    """
    from .importer import seed_store

    seed_store(fixture_path, force=force, db_path=_store_path(ctx))


@cli.command()
@click.argument("conversation_id")
@click.argument("sender_id")
@click.argument("text")
@click.pass_context
def send(ctx: click.Context, conversation_id: str, sender_id: str, text: str):
    """Send TEXT as SENDER_ID in an existing conversation."""
    from .inbox import Inbox

    store = _open_store(ctx)

    async def _send():
        inbox = Inbox(store)
        async with inbox.mounted(sender_id):
            thread = await inbox.open_thread(conversation_id)
            message = await inbox.send(text) if thread is not None else None
        _raise_notices(inbox.notices)
        return message

    try:
        message = _run(_send())
    finally:
        store.close()

    if message is None:
        raise click.ClickException("Message not sent.")
    click.echo(f"Sent {message.id} at {message.created_at:%Y-%m-%d %H:%M:%S}")


@cli.command()
@click.argument("user_id")
@click.pass_context
def inbox(ctx: click.Context, user_id: str):
    """Show USER_ID's conversations and unread count."""
    from .inbox import Inbox

    store = _open_store(ctx)

    async def _load():
        surface = Inbox(store)
        async with surface.mounted(user_id):
            await surface.set_visible(True)
            entries = surface.roster.entries
            unread = surface.counter.value
        _raise_notices(surface.notices)
        return entries, unread

    try:
        entries, unread = _run(_load())
    finally:
        store.close()

    click.echo()
    click.echo(click.style(f"Inbox for {user_id}", bold=True) + f"  ({unread} unread)")
    if not entries:
        click.echo("  No conversations yet.")
    for conv in entries:
        marker = click.style("●", fg="blue") if conv.has_unread else " "
        other = conv.counterpart(user_id)
        name = (other.full_name if other else None) or conv.counterpart_id(user_id)
        when = f"{conv.last_message_at:%Y-%m-%d %H:%M}" if conv.last_message_at else "—"
        click.echo(f" {marker} {name} ({when})")
        click.echo(f"   ID: {conv.id}" + (f" | {conv.unread_count} unread" if conv.unread_count else ""))
        if conv.last_message:
            preview = conv.last_message.replace("\n", " ")[:80]
            click.echo(f"   {preview}")
    click.echo()


@cli.command()
@click.argument("user_id")
@click.option("--mark-all", is_flag=True, help="Mark every notification read")
@click.option("--limit", default=25, show_default=True, help="How many to show")
@click.pass_context
def notifications(ctx: click.Context, user_id: str, mark_all: bool, limit: int):
    """List USER_ID's recent notifications."""
    from .notifications import NotificationFeed, describe_listing_kind

    store = _open_store(ctx)

    async def _load():
        feed = NotificationFeed(store, limit=limit)
        async with feed.mounted(user_id):
            await feed.load()
            if mark_all:
                await feed.mark_all_read()
            items = feed.items
            unread = feed.counter.value
        _raise_notices(feed.notices)
        return items, unread

    try:
        items, unread = _run(_load())
    finally:
        store.close()

    click.echo()
    click.echo(click.style(f"Notifications for {user_id}", bold=True) + f"  ({unread} unread)")
    if not items:
        click.echo("  Nothing here yet.")
    for n in items:
        marker = " " if n.is_read else click.style("●", fg="blue")
        label = describe_listing_kind(n.listing_kind) if n.listing_kind else n.title
        click.echo(f" {marker} [{n.type.value}] {label} ({n.created_at:%Y-%m-%d %H:%M})")
        if n.content:
            click.echo(f"   {n.content[:80]}")
    click.echo()


@cli.command()
@click.pass_context
def stats(ctx: click.Context):
    """Show row counts in the local store."""
    path = _store_path(ctx)
    if not path.exists():
        click.echo("No data found. Seed the store first:")
        click.echo("  marketsync seed fixtures.json")
        return

    store = _open_store(ctx)
    s = store.get_stats()
    store.close()

    click.echo()
    click.echo(click.style("Local store", bold=True))
    click.echo(f"  Users:          {s['users']:,}")
    click.echo(f"  Listings:       {s['products']:,}")
    click.echo(f"  Conversations:  {s['conversations']:,}")
    click.echo(f"  Messages:       {s['messages']:,} ({s['unread_messages']:,} unread)")
    click.echo(f"  Notifications:  {s['notifications']:,}")
    click.echo(f"  Favorites:      {s['favorites']:,}")
    if s["latest_message_at"]:
        click.echo(f"  Latest message: {s['latest_message_at']}")
    click.echo(f"  Location:       {path}")
    click.echo()


@cli.command()
@click.confirmation_option(prompt="This will delete the local store. Are you sure?")
@click.pass_context
def reset(ctx: click.Context):
    """Delete the local store and start fresh."""
    path = _store_path(ctx)
    if path.parent == DATA_DIR and DATA_DIR.exists():
        shutil.rmtree(DATA_DIR)
        click.echo(f"Deleted {DATA_DIR}")
    elif path.exists():
        for suffix in ("", "-wal", "-shm"):
            candidate = Path(f"{path}{suffix}")
            if candidate.exists():
                candidate.unlink()
        click.echo(f"Deleted {path}")
    else:
        click.echo("No data to delete.")
