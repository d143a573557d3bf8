from __future__ import annotations

import asyncio
from datetime import timezone
from typing import Any


def _iso_and_ts(dt) -> tuple[str, float]:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return (dt.isoformat(), dt.timestamp())


def message_payload(message: Any, *, message_type: str = "normal") -> dict[str, Any]:
    guild = getattr(message, "guild", None)
    reference = getattr(message, "reference", None)
    created_at_utc, created_ts = _iso_and_ts(message.created_at)
    return {
        "message_id": int(message.id),
        "server_id": int(guild.id) if guild else None,
        "channel_id": int(message.channel.id),
        "author_id": int(message.author.id),
        "content": message.content or "",
        "message_type": message_type,
        "reply_to": getattr(reference, "message_id", None) if reference else None,
        "created_at_utc": created_at_utc,
        "created_ts": created_ts,
    }


def _user_payload(author: Any) -> dict[str, Any]:
    avatar = getattr(author, "display_avatar", None)
    return {
        "id": int(author.id),
        "username": str(getattr(author, "name", None) or author),
        "display_name": getattr(author, "display_name", None),
        "avatar_url": str(getattr(avatar, "url", "") or "") or None,
    }


async def upsert_metadata(message: Any, *, message_service) -> None:
    guild = getattr(message, "guild", None)
    if guild:
        await message_service.upsert_server(
            {"id": guild.id, "name": getattr(guild, "name", None), "member_count": getattr(guild, "member_count", None)}
        )
    channel = message.channel
    await message_service.upsert_channel(
        {
            "id": channel.id,
            "server_id": guild.id if guild else None,
            "name": getattr(channel, "name", None) or "direct-message",
            "type": str(getattr(channel, "type", "") or "") or None,
            "topic": getattr(channel, "topic", None),
        }
    )
    await message_service.upsert_user(_user_payload(message.author))


async def log_message(message: Any, *, message_service, message_type: str = "normal") -> str | None:
    """Persist one incoming message. Bot authors and command lines are ignored (None)."""
    if getattr(message.author, "bot", False):
        return None
    if (message.content or "").lstrip().startswith("!"):
        return None
    await upsert_metadata(message, message_service=message_service)
    return await message_service.store_message(message_payload(message, message_type=message_type))


async def handle_edit(message_id: int, content: str, *, message_service) -> bool:
    return await message_service.update_message(int(message_id), content or "")


async def handle_delete(message_id: int, *, message_service) -> bool:
    return await message_service.delete_message(int(message_id))


async def handle_bulk_delete(message_ids, *, message_service) -> int:
    ids = [int(i) for i in message_ids if i]
    if not ids:
        return 0
    return await message_service.delete_messages(ids)


async def backfill_channel(
    channel: Any,
    *,
    allowed_channel_ids: set[int],
    bootstrap_channel_reset: bool,
    reset_backfill_done_func,
    is_backfill_done_func,
    backfill_limit: int,
    message_exists_func,
    log_message_func,
    batch_size: int,
    pause_seconds: float,
    mark_backfill_done_func,
) -> int:
    """
    Replay channel history oldest-first into the store. Messages already
    stored are skipped without touching the embedder, and the loop sleeps
    for pause_seconds after every batch_size new writes.
    """
    if not hasattr(channel, "id"):
        return 0

    channel_id = channel.id
    if allowed_channel_ids and channel_id not in allowed_channel_ids:
        return 0

    if bootstrap_channel_reset:
        await reset_backfill_done_func(channel_id)

    if await is_backfill_done_func(channel_id):
        return 0

    print(
        f"[Backfill] Starting channel {channel_id} ({getattr(channel, 'name', 'unknown')}) "
        f"limit={backfill_limit} batch={batch_size} pause={pause_seconds}s"
    )

    written = 0
    seen = 0
    try:
        async for msg in channel.history(limit=backfill_limit, oldest_first=True):
            seen += 1
            if getattr(msg.author, "bot", False):
                continue
            if await message_exists_func(msg.id):
                continue

            result = await log_message_func(msg)
            if result != "stored":
                continue

            written += 1
            if written % max(1, int(batch_size)) == 0:
                await asyncio.sleep(float(pause_seconds))
    except Exception as e:
        print(f"[Backfill] Error in channel {channel_id}: {e}")
        return written

    await mark_backfill_done_func(channel_id, written)
    print(f"[Backfill] Done channel {channel_id}. Seen {seen} messages, stored {written}.")
    return written
