from __future__ import annotations

import re

import discord


def message_in_allowed_channels(message: discord.Message, allowed_channel_ids: set[int]) -> bool:
    # DMs always pass; an empty allow-list means every guild channel.
    if getattr(message, "guild", None) is None:
        return True
    if not allowed_channel_ids:
        return True

    channel_id = int(getattr(message.channel, "id", 0) or 0)
    if channel_id in allowed_channel_ids:
        return True
    # thread: allow if parent is allowed
    if isinstance(message.channel, discord.Thread) and message.channel.parent:
        return int(message.channel.parent.id) in allowed_channel_ids
    return False


def bot_mention_prompt(message: discord.Message, bot_user) -> str | None:
    """Text addressed to the bot, or None when the message is not for it (no mention, not a DM)."""
    content = message.content or ""
    if getattr(message, "guild", None) is None:
        return content.strip()
    if bot_user is None or bot_user not in getattr(message, "mentions", []):
        return None
    return re.sub(rf"<@!?\s*{bot_user.id}\s*>", "", content).strip()
