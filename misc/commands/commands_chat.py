from __future__ import annotations

from discord.ext import commands
from controller.errors import StorageError
from misc.commands.command_deps import CommandDeps
from misc.commands.command_deps import CommandGates
from misc.discord_text import truncate_for_display


async def deliver_outcome(channel, outcome) -> None:
    if outcome.reply:
        await channel.send(truncate_for_display(outcome.reply))
    elif outcome.notice:
        await channel.send(outcome.notice)


async def ask(message, prompt: str, *, deps: CommandDeps, fresh: bool = False) -> None:
    key = deps.conversation_key_func(message)
    scope = deps.scope_func(message)
    async with message.channel.typing():
        outcome = await deps.orchestrator.handle_user_message(
            key,
            scope,
            int(message.author.id),
            prompt,
            fresh=fresh,
        )
    print(f"[Chat] user={message.author.id} key={key} state={outcome.state.value}")
    await deliver_outcome(message.channel, outcome)


def register(
    bot: commands.Bot,
    *,
    deps: CommandDeps,
    gates: CommandGates,
) -> None:
    @bot.command(name="ai")
    async def cmd_ai(ctx: commands.Context, *, prompt: str = ""):
        if not gates.in_allowed_channel(ctx):
            return
        await ask(ctx.message, prompt, deps=deps)

    @bot.command(name="asknew")
    async def cmd_asknew(ctx: commands.Context, *, prompt: str = ""):
        if not gates.in_allowed_channel(ctx):
            return
        if not prompt.strip():
            await ctx.send("Usage: `!asknew <message>`")
            return
        await ask(ctx.message, prompt, deps=deps, fresh=True)

    @bot.command(name="newchat", aliases=["clear"])
    async def cmd_newchat(ctx: commands.Context):
        if not gates.in_allowed_channel(ctx):
            return
        deps.orchestrator.reset_conversation(deps.conversation_key_func(ctx.message))
        await ctx.send("Started a fresh conversation. Previous chat history is cleared.")

    @bot.command(name="optout")
    async def cmd_optout(ctx: commands.Context):
        try:
            hidden = await deps.message_service.set_opt_out(int(ctx.author.id), True)
        except StorageError as e:
            print(f"[Store] optout failed user={ctx.author.id}: {e.code}: {e}")
            await ctx.send("Couldn't update your privacy setting right now. Nothing was changed; please try again.")
            return
        await ctx.send(
            f"You're opted out. {hidden} stored message(s) are hidden and none of your future messages will be stored "
            "or used as context."
        )

    @bot.command(name="optin")
    async def cmd_optin(ctx: commands.Context):
        try:
            await deps.message_service.set_opt_out(int(ctx.author.id), False)
        except StorageError as e:
            print(f"[Store] optin failed user={ctx.author.id}: {e.code}: {e}")
            await ctx.send("Couldn't update your privacy setting right now. Nothing was changed; please try again.")
            return
        await ctx.send(
            "You're opted back in. New messages will be stored; messages hidden while you were opted out stay hidden."
        )

    @bot.command(name="privacy")
    async def cmd_privacy(ctx: commands.Context):
        user = await deps.message_service.get_user(int(ctx.author.id))
        opted_out = bool(user and user.get("opt_out"))
        status = "opted out" if opted_out else "opted in"
        await ctx.send(
            f"Privacy status: **{status}**.\n"
            "Messages in this server may be stored and used as context for answers. "
            "Use `!optout` to hide your messages and stop collection, `!optin` to resume. "
            f"Chat history is kept in memory only (scope: {deps.history_scope}); `!newchat` clears it."
        )
