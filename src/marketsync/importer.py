"""Seed pipeline: JSON fixture → row decoding → local store."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import click

from .config import SQLITE_PATH
from .rows import conversation_from_row, favorite_from_row, message_from_row, notification_from_row
from .storage import MarketplaceStore

logger = logging.getLogger(__name__)


def _load_fixture(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise click.ClickException(f"File not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"Not valid JSON: {path} ({exc})")
    if not isinstance(data, dict):
        raise click.ClickException("Fixture must be a JSON object with 'conversations', 'notifications', ... keys.")
    return data


def _seed_conversation(store: MarketplaceStore, row: dict[str, Any], force: bool) -> int:
    """Store one conversation and its messages; returns the message count."""
    messages = [message_from_row({**m, "conversation_id": row["id"]}) for m in row.get("messages", [])]
    messages.sort(key=lambda m: (m.created_at, m.id))

    # Fill roster fields from the newest message when the fixture omits them
    summary_row = dict(row)
    if messages:
        summary_row.setdefault("last_message", messages[-1].content)
        summary_row.setdefault("last_message_at", messages[-1].created_at)
    conversation = conversation_from_row(summary_row)

    store.insert_conversation(conversation, replace=force)
    for message in messages:
        if message.receiver_id is None:
            message = message.model_copy(
                update={"receiver_id": conversation.counterpart_id(message.sender_id or "")}
            )
        store.insert_message(message, replace=force)
    return len(messages)


def seed_store(fixture_path: str, force: bool = False, db_path: Path | None = None) -> dict:
    """Import a JSON fixture into the local store.

    Returns a summary dict with import statistics.
    """
    data = _load_fixture(Path(fixture_path))
    store = MarketplaceStore(db_path or SQLITE_PATH)

    for user in data.get("users", []):
        store.upsert_user(user["id"], user.get("full_name"), user.get("avatar_url"))
    for product in data.get("products", []):
        store.upsert_product(product["id"], product.get("title") or "Untitled", product.get("price"), product.get("currency"))

    imported = 0
    skipped = 0
    total_messages = 0

    conversations = data.get("conversations", [])
    with click.progressbar(
        conversations,
        label="Seeding conversations",
        show_pos=True,
    ) as progress:
        for row in progress:
            if not force and store.conversation_exists(row.get("id", "")):
                skipped += 1
                continue
            try:
                total_messages += _seed_conversation(store, row, force)
            except Exception:
                logger.warning("Failed to seed conversation '%s'", row.get("id", "unknown"), exc_info=True)
                skipped += 1
                continue
            imported += 1

    notifications = 0
    for row in data.get("notifications", []):
        try:
            store.insert_notification(notification_from_row(row), replace=force)
            notifications += 1
        except Exception:
            logger.warning("Failed to seed notification '%s'", row.get("id", "unknown"), exc_info=True)

    favorites = 0
    for row in data.get("favorites", []):
        try:
            store.insert_favorite(favorite_from_row(row), replace=force)
            favorites += 1
        except Exception:
            logger.warning("Failed to seed favorite '%s'", row.get("id", "unknown"), exc_info=True)

    store.close()

    summary = {
        "imported": imported,
        "skipped": skipped,
        "messages": total_messages,
        "notifications": notifications,
        "favorites": favorites,
    }

    click.echo()
    click.echo(click.style("Seed complete!", fg="green", bold=True))
    click.echo(f"  Conversations: {imported} ({total_messages} messages)")
    if skipped:
        click.echo(f"  Skipped:       {skipped} (already present, use --force to replace)")
    click.echo(f"  Notifications: {notifications}")
    click.echo(f"  Favorites:     {favorites}")

    return summary
