from __future__ import annotations

import asyncio
import sqlite3
from typing import Any, Sequence

from controller.errors import StorageError
from memory.locks import KeyedLocks
from messages import store
from providers.embedding import embed_or_none


class MessageService:
    """
    Async face of the message store.

    Embedding calls run outside the shared db lock (they are the slow,
    network-bound part); writes for the same message id are serialised by a
    per-id lock so the last writer to finish is the one that sticks.
    """

    def __init__(
        self,
        *,
        db_lock,
        db_conn: sqlite3.Connection,
        embedder,
        opt_out_retries: int = 3,
        opt_out_retry_delay: float = 0.25,
    ) -> None:
        self.db_lock = db_lock
        self.db_conn = db_conn
        self.embedder = embedder
        self.opt_out_retries = max(1, int(opt_out_retries))
        self.opt_out_retry_delay = float(opt_out_retry_delay)
        self.id_locks = KeyedLocks()

    async def _run(self, func, *args, **kwargs):
        async with self.db_lock:
            return await asyncio.to_thread(func, self.db_conn, *args, **kwargs)

    # ---- metadata ----
    async def upsert_server(self, server: dict[str, Any]) -> None:
        await self._run(store.upsert_server_sync, server)

    async def upsert_channel(self, channel: dict[str, Any]) -> None:
        await self._run(store.upsert_channel_sync, channel)

    async def upsert_user(self, user: dict[str, Any], *, opt_out: bool | None = None) -> int:
        return await self._run(store.upsert_user_sync, user, opt_out=opt_out)

    async def get_user(self, user_id: int) -> dict[str, Any] | None:
        return await self._run(store.get_user_sync, int(user_id))

    async def set_opt_out(self, user_id: int, flag: bool) -> int:
        """
        All-or-nothing. A failed attempt has already been rolled back, so the
        whole operation is simply run again.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                hidden = await self._run(store.set_opt_out_sync, int(user_id), bool(flag))
            except StorageError as e:
                print(f"[Store] set_opt_out attempt {attempt}/{self.opt_out_retries} failed: {e}")
                if attempt >= self.opt_out_retries:
                    raise
                await asyncio.sleep(self.opt_out_retry_delay)
                continue
            print(f"[Store] user={user_id} opt_out={bool(flag)} hidden_messages={hidden}")
            return hidden

    # ---- messages ----
    async def store_message(self, payload: dict[str, Any]) -> str:
        """Returns "stored" or "skipped" (opted-out author). Raises StorageError if content was not stored."""
        message_id, _channel_id, author_id, content, *_rest = store.validate_message_payload(payload)
        async with self.id_locks.hold(message_id):
            if await self._run(store.is_opted_out_sync, author_id):
                return "skipped"
            embedding = await embed_or_none(self.embedder, content)
            if embedding is None and content.strip():
                print(f"[Store] message={message_id} stored without embedding")
            return await self._run(store.store_message_sync, payload, embedding)

    async def update_message(self, message_id: int, content: str) -> bool:
        async with self.id_locks.hold(int(message_id)):
            embedding = await embed_or_none(self.embedder, content)
            return await self._run(store.update_message_sync, int(message_id), content, embedding)

    async def delete_message(self, message_id: int) -> bool:
        async with self.id_locks.hold(int(message_id)):
            return await self._run(store.delete_message_sync, int(message_id))

    async def delete_messages(self, message_ids: list[int]) -> int:
        return await self._run(store.delete_messages_sync, list(message_ids))

    async def message_exists(self, message_id: int) -> bool:
        return await self._run(store.message_exists_sync, int(message_id))

    # ---- reads ----
    async def find_similar(
        self,
        query_embedding: Sequence[float],
        server_id: int,
        channel_id: int | None = None,
        limit: int = 10,
        since_ts: float | None = None,
    ) -> list[dict[str, Any]]:
        return await self._run(store.find_similar_sync, query_embedding, server_id, channel_id, limit, since_ts)

    async def get_messages_in_time_range(
        self,
        channel_id: int,
        *,
        before_ts: float | None = None,
        after_ts: float | None = None,
        limit: int = 50,
        ascending: bool = True,
    ) -> list[dict[str, Any]]:
        return await self._run(
            store.fetch_messages_in_time_range_sync,
            int(channel_id),
            before_ts=before_ts,
            after_ts=after_ts,
            limit=limit,
            ascending=ascending,
        )

    async def fetch_neighbors(self, anchor: dict[str, Any], window: int) -> tuple[list[dict], list[dict]]:
        return await self._run(store.fetch_neighbors_sync, anchor, window)

    async def fetch_recent_messages(
        self,
        server_id: int,
        channel_id: int | None = None,
        limit: int = 10,
        since_ts: float | None = None,
    ) -> list[dict[str, Any]]:
        return await self._run(store.fetch_recent_messages_sync, server_id, channel_id, limit, since_ts)

    async def get_server_context(self, server_id: int, *, since_ts: float, user_limit: int = 50) -> dict[str, Any]:
        return await self._run(store.get_server_context_sync, int(server_id), since_ts=since_ts, user_limit=user_limit)

    async def stats(self) -> dict[str, int]:
        return await self._run(store.count_messages_sync)
