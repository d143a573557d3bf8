from __future__ import annotations

import asyncio

from discord.ext import commands
from misc.commands.command_deps import CommandDeps
from misc.commands.command_deps import CommandGates


def register(
    bot: commands.Bot,
    *,
    deps: CommandDeps,
    gates: CommandGates,
) -> None:
    @bot.command(name="dbmigrations")
    async def cmd_dbmigrations(ctx: commands.Context, limit: int = 30):
        if not gates.in_allowed_channel(ctx):
            return
        if not gates.user_is_owner(ctx.author):
            await ctx.send("This command is owner-only.")
            return

        lim = max(1, min(int(limit or 30), 200))
        async with deps.db_lock:
            rows = await asyncio.to_thread(deps.list_schema_migrations_sync, deps.db_conn, lim)

        if not rows:
            await ctx.send("No schema migrations found.")
            return

        lines = [f"Applied schema migrations (latest {len(rows)}):"]
        for version, name, applied_at in rows:
            lines.append(f"- {version}_{name} @ {applied_at}")

        await deps.send_chunked(ctx.channel, "```\n" + "\n".join(lines)[:7000] + "\n```")

    @bot.command(name="storestats")
    async def cmd_storestats(ctx: commands.Context):
        if not gates.in_allowed_channel(ctx):
            return
        if not gates.user_is_owner(ctx.author):
            await ctx.send("This command is owner-only.")
            return

        stats = await deps.message_service.stats()
        async with deps.db_lock:
            channels = await asyncio.to_thread(deps.list_channel_state_sync, deps.db_conn)

        lines = [
            "Message store:",
            f"- total={stats.get('total', 0)} live={stats.get('live', 0)} deleted={stats.get('deleted', 0)}",
            f"- embedded={stats.get('embedded', 0)} opted_out_users={stats.get('opted_out_users', 0)}",
            f"Backfill state ({len(channels)} channels):",
        ]
        for row in channels:
            done = "done" if row["backfill_done"] else "pending"
            lines.append(
                f"- {row['channel_id']} {done} stored={row['backfilled_count']} "
                f"last={row['last_backfill_at_utc'] or '-'}"
            )

        await deps.send_chunked(ctx.channel, "```\n" + "\n".join(lines)[:7000] + "\n```")

    @bot.command(name="backfillreset")
    async def cmd_backfillreset(ctx: commands.Context, channel: str = ""):
        if not gates.in_allowed_channel(ctx):
            return
        if not gates.user_is_owner(ctx.author):
            await ctx.send("This command is owner-only.")
            return

        token = (channel or "").strip()
        if not token:
            async with deps.db_lock:
                n = await asyncio.to_thread(deps.reset_all_backfill_done_sync, deps.db_conn)
            await ctx.send(f"Reset backfill state for {n} channel(s). History replays on next restart.")
            return

        channel_id = deps.parse_channel_id_token(token) if deps.parse_channel_id_token else None
        if channel_id is None:
            await ctx.send("Usage: `!backfillreset [#channel|channel_id]`")
            return

        async with deps.db_lock:
            await asyncio.to_thread(deps.reset_backfill_done_sync, deps.db_conn, channel_id)
        await ctx.send(f"Reset backfill state for <#{channel_id}>. History replays on next restart.")
