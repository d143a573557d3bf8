from __future__ import annotations

import sqlite3
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from unittest import mock

from db.migrate import apply_sqlite_migrations
from ingestion.service import backfill_channel
from ingestion.service import handle_bulk_delete
from ingestion.service import handle_delete
from ingestion.service import handle_edit
from ingestion.service import log_message
from ingestion.service import message_payload
from ingestion.store import get_backfill_done_sync
from ingestion.store import list_channel_state_sync
from ingestion.store import reset_all_backfill_done_sync
from ingestion.store import set_backfill_done_sync
from messages.service import MessageService

START = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)


class _NoopAsyncLock:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class _CountingEmbedder:
    def __init__(self):
        self.calls = 0

    async def embed(self, text):
        self.calls += 1
        return [1.0, 0.0]


class _FakeChannel:
    def __init__(self, channel_id: int, messages, *, fail_after: int | None = None):
        self.id = channel_id
        self.name = "general"
        self.type = "text"
        self.topic = None
        self._messages = list(messages)
        self._fail_after = fail_after
        self.history_calls: list[dict] = []

    async def history(self, *, limit=None, oldest_first=False):
        self.history_calls.append({"limit": limit, "oldest_first": oldest_first})
        for i, msg in enumerate(self._messages):
            if self._fail_after is not None and i >= self._fail_after:
                raise RuntimeError("discord hiccup")
            yield msg


def _migrations_dir() -> str:
    return str(Path(__file__).resolve().parents[1] / "migrations")


def _author(user_id: int, *, bot: bool = False):
    return SimpleNamespace(id=user_id, name=f"user{user_id}", display_name=f"User {user_id}", bot=bot)


def _message(message_id: int, channel, *, author_id: int = 10, bot: bool = False, content: str | None = None):
    return SimpleNamespace(
        id=message_id,
        guild=SimpleNamespace(id=1, name="Guild", member_count=5),
        channel=channel,
        author=_author(author_id, bot=bot),
        content=content if content is not None else f"message {message_id}",
        reference=None,
        created_at=START + timedelta(minutes=message_id),
    )


class IngestionTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.conn = sqlite3.connect(":memory:", check_same_thread=False)
        apply_sqlite_migrations(self.conn, _migrations_dir())
        self.embedder = _CountingEmbedder()
        self.service = MessageService(db_lock=_NoopAsyncLock(), db_conn=self.conn, embedder=self.embedder)
        self.channel = _FakeChannel(100, [])

    def tearDown(self):
        self.conn.close()

    def test_payload_uses_utc_iso_and_timestamp(self):
        msg = _message(3, self.channel)
        payload = message_payload(msg, message_type="backfill")
        created = START + timedelta(minutes=3)
        self.assertEqual(payload["created_at_utc"], created.isoformat())
        self.assertEqual(payload["created_ts"], created.timestamp())
        self.assertEqual(payload["server_id"], 1)
        self.assertEqual(payload["message_type"], "backfill")
        self.assertIsNone(payload["reply_to"])

    async def test_log_message_stores_metadata_and_content(self):
        result = await log_message(_message(1, self.channel), message_service=self.service)
        self.assertEqual(result, "stored")
        user = await self.service.get_user(10)
        self.assertEqual(user["display_name"], "User 10")
        self.assertTrue(await self.service.message_exists(1))

    async def test_bot_messages_are_never_stored(self):
        result = await log_message(_message(1, self.channel, bot=True), message_service=self.service)
        self.assertIsNone(result)
        self.assertFalse(await self.service.message_exists(1))
        self.assertEqual(self.embedder.calls, 0)

    async def test_command_lines_are_never_stored(self):
        result = await log_message(_message(1, self.channel, content="!ai hello"), message_service=self.service)
        self.assertIsNone(result)
        self.assertFalse(await self.service.message_exists(1))

    async def test_edit_and_delete_events(self):
        await log_message(_message(1, self.channel), message_service=self.service)
        await log_message(_message(2, self.channel), message_service=self.service)
        await log_message(_message(3, self.channel), message_service=self.service)

        self.assertTrue(await handle_edit(1, "edited text", message_service=self.service))
        self.assertTrue(await handle_delete(2, message_service=self.service))
        self.assertEqual(await handle_bulk_delete([3, None], message_service=self.service), 1)
        self.assertEqual(await handle_bulk_delete([], message_service=self.service), 0)

        recent = await self.service.fetch_recent_messages(1, 100, 10)
        self.assertEqual([r["message_id"] for r in recent], [1])
        self.assertEqual(recent[0]["content"], "edited text")


class BackfillTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.conn = sqlite3.connect(":memory:", check_same_thread=False)
        apply_sqlite_migrations(self.conn, _migrations_dir())
        self.embedder = _CountingEmbedder()
        self.service = MessageService(db_lock=_NoopAsyncLock(), db_conn=self.conn, embedder=self.embedder)
        self.marked: list[tuple[int, int]] = []
        self.reset_calls: list[int] = []

    def tearDown(self):
        self.conn.close()

    async def _is_done(self, channel_id):
        return get_backfill_done_sync(self.conn, channel_id)[0]

    async def _mark_done(self, channel_id, written):
        self.marked.append((channel_id, written))
        set_backfill_done_sync(self.conn, channel_id, START.isoformat(), written)

    async def _reset(self, channel_id):
        self.reset_calls.append(channel_id)

    async def _log(self, msg):
        return await log_message(msg, message_service=self.service, message_type="backfill")

    async def _run(self, channel, *, allowed=frozenset(), batch_size=2, pause=0.5, limit=1000, reset=False):
        return await backfill_channel(
            channel,
            allowed_channel_ids=set(allowed),
            bootstrap_channel_reset=reset,
            reset_backfill_done_func=self._reset,
            is_backfill_done_func=self._is_done,
            backfill_limit=limit,
            message_exists_func=self.service.message_exists,
            log_message_func=self._log,
            batch_size=batch_size,
            pause_seconds=pause,
            mark_backfill_done_func=self._mark_done,
        )

    async def test_skips_existing_messages_and_pauses_between_batches(self):
        channel = _FakeChannel(100, [])
        channel._messages = [_message(i, channel) for i in range(1, 6)]
        await log_message(channel._messages[0], message_service=self.service)
        await log_message(channel._messages[1], message_service=self.service)
        self.embedder.calls = 0

        with mock.patch("ingestion.service.asyncio.sleep") as sleep:
            written = await self._run(channel, batch_size=2, pause=0.5)

        self.assertEqual(written, 3)
        self.assertEqual(self.embedder.calls, 3)
        sleep.assert_awaited_once_with(0.5)
        self.assertEqual(channel.history_calls, [{"limit": 1000, "oldest_first": True}])
        self.assertEqual(self.marked, [(100, 3)])
        state = list_channel_state_sync(self.conn)
        self.assertEqual(state[0]["backfilled_count"], 3)
        self.assertTrue(state[0]["backfill_done"])

    async def test_bots_are_skipped(self):
        channel = _FakeChannel(100, [])
        channel._messages = [_message(1, channel, bot=True), _message(2, channel)]
        with mock.patch("ingestion.service.asyncio.sleep"):
            written = await self._run(channel)
        self.assertEqual(written, 1)
        self.assertFalse(await self.service.message_exists(1))

    async def test_finished_channel_is_not_replayed(self):
        set_backfill_done_sync(self.conn, 100, START.isoformat(), 7)
        channel = _FakeChannel(100, [])
        channel._messages = [_message(1, channel)]

        written = await self._run(channel)

        self.assertEqual(written, 0)
        self.assertEqual(channel.history_calls, [])
        self.assertEqual(self.marked, [])

    async def test_channel_outside_allow_list_is_ignored(self):
        channel = _FakeChannel(100, [])
        channel._messages = [_message(1, channel)]
        written = await self._run(channel, allowed={200})
        self.assertEqual(written, 0)
        self.assertEqual(channel.history_calls, [])

    async def test_bootstrap_reset_is_applied_before_check(self):
        channel = _FakeChannel(100, [])
        await self._run(channel, reset=True)
        self.assertEqual(self.reset_calls, [100])

    async def test_history_error_does_not_mark_done(self):
        channel = _FakeChannel(100, [], fail_after=1)
        channel._messages = [_message(1, channel), _message(2, channel)]
        with mock.patch("ingestion.service.asyncio.sleep"):
            written = await self._run(channel)
        self.assertEqual(written, 1)
        self.assertEqual(self.marked, [])
        self.assertFalse(get_backfill_done_sync(self.conn, 100)[0])

    async def test_reset_all_clears_every_channel(self):
        set_backfill_done_sync(self.conn, 100, START.isoformat(), 1)
        set_backfill_done_sync(self.conn, 200, START.isoformat(), 1)
        self.assertEqual(reset_all_backfill_done_sync(self.conn), 2)
        self.assertFalse(get_backfill_done_sync(self.conn, 100)[0])
        self.assertFalse(get_backfill_done_sync(self.conn, 200)[0])


if __name__ == "__main__":
    unittest.main()
