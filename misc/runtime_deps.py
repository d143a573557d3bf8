from __future__ import annotations

from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class RuntimeDeps:
    # logging / ingestion
    log_message_func: Callable
    edit_message_func: Callable
    delete_message_func: Callable
    bulk_delete_func: Callable

    # chat
    ask_func: Callable
    bot_name: str = "Glue"


@dataclass(frozen=True)
class RuntimeBootDeps:
    allowed_channel_ids: set[int]
    bootstrap_channel_reset_all: bool
    reset_all_backfill_done_func: Callable
    backfill_channel_func: Callable
