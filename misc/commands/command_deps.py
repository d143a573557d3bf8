from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Callable


def _default_false(*args, **kwargs) -> bool:
    return False


@dataclass(frozen=True)
class CommandDeps:
    # Core/shared
    db_lock: Any = None
    db_conn: Any = None
    send_chunked: Callable | None = None

    # Chat
    orchestrator: Any = None
    message_service: Any = None
    conversation_key_func: Callable[[Any], str] | None = None
    scope_func: Callable[[Any], Any] | None = None
    history_scope: str = "user_channel"

    # Owner tooling
    list_schema_migrations_sync: Callable | None = None
    list_channel_state_sync: Callable | None = None
    reset_backfill_done_sync: Callable | None = None
    reset_all_backfill_done_sync: Callable | None = None
    parse_channel_id_token: Callable[[str], int | None] | None = None


@dataclass(frozen=True)
class CommandGates:
    in_allowed_channel: Callable[[Any], bool] = _default_false
    allowed_channel_ids: set[int] = field(default_factory=set)
    user_is_owner: Callable[[Any], bool] = _default_false
