from __future__ import annotations

import discord
from controller.errors import GlueError
from controller.errors import PrivacyViolation
from discord.ext import commands
from misc.discord_gates import bot_mention_prompt
from misc.discord_gates import message_in_allowed_channels
from misc.runtime_deps import RuntimeBootDeps
from misc.runtime_deps import RuntimeDeps


async def _resolve_channel(bot: commands.Bot, channel_id: int):
    channel = bot.get_channel(channel_id)
    if channel is not None:
        return channel
    try:
        return await bot.fetch_channel(channel_id)
    except discord.DiscordException as e:
        print(f"[Backfill] Could not fetch channel {channel_id}: {e}")
        return None


def register_runtime_events(
    bot: commands.Bot,
    *,
    deps: RuntimeDeps,
    boot: RuntimeBootDeps,
) -> None:
    @bot.event
    async def on_ready():
        print(f"{deps.bot_name} is online as {bot.user}")
        if getattr(bot, "_backfill_started", False):
            return
        bot._backfill_started = True

        if boot.bootstrap_channel_reset_all:
            n = await boot.reset_all_backfill_done_func()
            print(f"[Backfill] Reset ALL backfill_done flags (bootstrap) channels={n}")

        if boot.allowed_channel_ids:
            channels = [await _resolve_channel(bot, cid) for cid in sorted(boot.allowed_channel_ids)]
        else:
            channels = [ch for guild in bot.guilds for ch in guild.text_channels]

        for channel in channels:
            if channel is None:
                continue
            await boot.backfill_channel_func(channel)

    @bot.event
    async def on_message(message: discord.Message):
        if message.author.bot:
            return
        if not message_in_allowed_channels(message, boot.allowed_channel_ids):
            return

        # command lines are instructions to the bot, not conversation
        if (message.content or "").lstrip().startswith("!"):
            await bot.process_commands(message)
            return

        try:
            await deps.log_message_func(message)
        except GlueError as e:
            print(f"[Events] store failed message={message.id}: {e.code}: {e}")

        prompt = bot_mention_prompt(message, bot.user)
        if prompt is None:
            return
        if not prompt:
            await message.channel.send("Yep?")
            return

        try:
            await deps.ask_func(message, prompt)
        except PrivacyViolation as e:
            print(f"[Chat] PRIVACY VIOLATION {e.code}: {e}")
            await message.channel.send(f"{deps.bot_name} hit an internal error. Check logs.")
            raise
        except Exception as e:
            print(f"[Chat] Error: {e}")
            await message.channel.send(f"{deps.bot_name} hiccuped. Check logs.")

    @bot.event
    async def on_command_error(ctx: commands.Context, error: commands.CommandError):
        if isinstance(error, commands.CommandNotFound):
            return
        original = getattr(error, "original", error)
        print(f"[Events] command {getattr(ctx.command, 'name', '?')} failed: {original}")
        if isinstance(original, PrivacyViolation):
            await ctx.send(f"{deps.bot_name} hit an internal error. Check logs.")
            raise original
        await ctx.send(f"{deps.bot_name} hiccuped. Check logs.")

    @bot.event
    async def on_raw_message_edit(payload: discord.RawMessageUpdateEvent):
        data = payload.data or {}
        content = data.get("content")
        if content is None:
            # embed-only updates carry no content
            return
        if (data.get("author") or {}).get("bot"):
            return
        try:
            changed = await deps.edit_message_func(payload.message_id, content)
        except GlueError as e:
            print(f"[Events] edit failed message={payload.message_id}: {e.code}: {e}")
            return
        if changed:
            print(f"[Events] edited message={payload.message_id}")

    @bot.event
    async def on_raw_message_delete(payload: discord.RawMessageDeleteEvent):
        try:
            await deps.delete_message_func(payload.message_id)
        except GlueError as e:
            print(f"[Events] delete failed message={payload.message_id}: {e.code}: {e}")

    @bot.event
    async def on_raw_bulk_message_delete(payload: discord.RawBulkMessageDeleteEvent):
        try:
            n = await deps.bulk_delete_func(payload.message_ids)
        except GlueError as e:
            print(f"[Events] bulk delete failed count={len(payload.message_ids)}: {e.code}: {e}")
            return
        print(f"[Events] bulk delete channel={payload.channel_id} hidden={n}")
