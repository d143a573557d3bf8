from __future__ import annotations

from ingestion.service import backfill_channel as backfill_channel_service
from ingestion.service import handle_bulk_delete
from ingestion.service import handle_delete
from ingestion.service import handle_edit
from ingestion.service import log_message as log_message_service
from memory.conversation import build_conversation_key
from misc.commands.command_deps import CommandDeps
from misc.commands.command_deps import CommandGates
from misc.commands.commands_chat import ask as ask_service
from misc.commands.commands_chat import register as register_chat
from misc.commands.commands_owner import register as register_owner
from misc.runtime_deps import RuntimeBootDeps
from misc.runtime_deps import RuntimeDeps
from misc.events_runtime import register_runtime_events
from retrieval.service import RetrievalScope


def wire_bot_runtime(
    bot,
    *,
    allowed_channel_ids: set[int],
    user_is_owner,
    db_lock,
    db_conn,
    send_chunked,
    message_service,
    orchestrator,
    history_scope: str,
    list_schema_migrations_sync,
    list_channel_state_sync,
    reset_backfill_done_sync,
    reset_all_backfill_done_sync,
    parse_channel_id_token,
    bootstrap_channel_reset_all: bool,
    bootstrap_channel_reset: bool,
    reset_all_backfill_done_func,
    reset_backfill_done_func,
    is_backfill_done_func,
    mark_backfill_done_func,
    backfill_limit: int,
    backfill_batch_size: int,
    backfill_pause_seconds: float,
    bot_name: str = "Glue",
) -> None:
    def in_allowed_channel(ctx) -> bool:
        if getattr(ctx, "guild", None) is None or not allowed_channel_ids:
            return True
        try:
            return int(ctx.channel.id) in allowed_channel_ids
        except (AttributeError, TypeError, ValueError):
            return False

    def conversation_key(message) -> str:
        guild = getattr(message, "guild", None)
        return build_conversation_key(
            history_scope,
            guild_id=guild.id if guild else None,
            channel_id=message.channel.id,
            user_id=message.author.id,
        )

    def retrieval_scope(message) -> RetrievalScope:
        guild = getattr(message, "guild", None)
        return RetrievalScope(
            server_id=guild.id if guild else None,
            exclude_message_ids=frozenset({int(message.id)}),
        )

    command_deps = CommandDeps(
        db_lock=db_lock,
        db_conn=db_conn,
        send_chunked=send_chunked,
        orchestrator=orchestrator,
        message_service=message_service,
        conversation_key_func=conversation_key,
        scope_func=retrieval_scope,
        history_scope=history_scope,
        list_schema_migrations_sync=list_schema_migrations_sync,
        list_channel_state_sync=list_channel_state_sync,
        reset_backfill_done_sync=reset_backfill_done_sync,
        reset_all_backfill_done_sync=reset_all_backfill_done_sync,
        parse_channel_id_token=parse_channel_id_token,
    )
    command_gates = CommandGates(
        in_allowed_channel=in_allowed_channel,
        allowed_channel_ids=allowed_channel_ids,
        user_is_owner=user_is_owner,
    )

    register_chat(
        bot,
        deps=command_deps,
        gates=command_gates,
    )

    register_owner(
        bot,
        deps=command_deps,
        gates=command_gates,
    )

    async def log_message(message, message_type: str = "normal"):
        return await log_message_service(message, message_service=message_service, message_type=message_type)

    async def log_backfill_message(message):
        return await log_message(message, message_type="backfill")

    async def backfill_channel(channel):
        return await backfill_channel_service(
            channel,
            allowed_channel_ids=allowed_channel_ids,
            bootstrap_channel_reset=bootstrap_channel_reset,
            reset_backfill_done_func=reset_backfill_done_func,
            is_backfill_done_func=is_backfill_done_func,
            backfill_limit=backfill_limit,
            message_exists_func=message_service.message_exists,
            log_message_func=log_backfill_message,
            batch_size=backfill_batch_size,
            pause_seconds=backfill_pause_seconds,
            mark_backfill_done_func=mark_backfill_done_func,
        )

    async def edit_message(message_id: int, content: str):
        return await handle_edit(message_id, content, message_service=message_service)

    async def delete_message(message_id: int):
        return await handle_delete(message_id, message_service=message_service)

    async def bulk_delete(message_ids):
        return await handle_bulk_delete(message_ids, message_service=message_service)

    async def ask(message, prompt: str):
        return await ask_service(message, prompt, deps=command_deps)

    register_runtime_events(
        bot,
        deps=RuntimeDeps(
            log_message_func=log_message,
            edit_message_func=edit_message,
            delete_message_func=delete_message,
            bulk_delete_func=bulk_delete,
            ask_func=ask,
            bot_name=bot_name,
        ),
        boot=RuntimeBootDeps(
            allowed_channel_ids=allowed_channel_ids,
            bootstrap_channel_reset_all=bootstrap_channel_reset_all,
            reset_all_backfill_done_func=reset_all_backfill_done_func,
            backfill_channel_func=backfill_channel,
        ),
    )
