from __future__ import annotations

import sqlite3
import unittest
from datetime import datetime, timezone
from pathlib import Path

import numpy as np

from controller.errors import StorageError
from controller.errors import ValidationError
from db.migrate import apply_sqlite_migrations
from messages.store import count_messages_sync
from messages.store import delete_message_sync
from messages.store import delete_messages_sync
from messages.store import fetch_messages_in_time_range_sync
from messages.store import fetch_neighbors_sync
from messages.store import fetch_recent_messages_sync
from messages.store import find_similar_sync
from messages.store import get_server_context_sync
from messages.store import get_user_sync
from messages.store import is_opted_out_sync
from messages.store import message_exists_sync
from messages.store import set_opt_out_sync
from messages.store import store_message_sync
from messages.store import update_message_sync
from messages.store import upsert_channel_sync
from messages.store import upsert_server_sync
from messages.store import upsert_user_sync
from retrieval.similarity import similarity_score

BASE_TS = 1_760_000_000.0


def _migrations_dir() -> str:
    return str(Path(__file__).resolve().parents[1] / "migrations")


def _visible_message(conn: sqlite3.Connection, message_id: int) -> dict | None:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT m.message_id, m.channel_id, m.content, m.created_ts, m.updated_at_utc
        FROM messages m
        LEFT JOIN users u ON u.id = m.author_id
        WHERE m.message_id = ? AND m.deleted_at_utc IS NULL AND COALESCE(u.opt_out, 0) = 0
        """,
        (int(message_id),),
    )
    row = cur.fetchone()
    if row is None:
        return None
    cols = [d[0] for d in cur.description]
    return dict(zip(cols, row))


def _iso(n: int) -> str:
    return f"2026-01-{n:02d}T00:00:00+00:00"


def _payload(
    message_id: int,
    *,
    author_id: int = 10,
    channel_id: int = 100,
    server_id: int | None = 1,
    content: str = "hello",
    offset: float = 0.0,
) -> dict:
    ts = BASE_TS + offset
    return {
        "message_id": message_id,
        "server_id": server_id,
        "channel_id": channel_id,
        "author_id": author_id,
        "content": content,
        "created_at_utc": datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(),
        "created_ts": ts,
    }


class MessageStoreTests(unittest.TestCase):
    def setUp(self):
        self.conn = sqlite3.connect(":memory:")
        apply_sqlite_migrations(self.conn, _migrations_dir())

    def tearDown(self):
        self.conn.close()

    def _ids(self, rows):
        return [int(r["message_id"]) for r in rows]

    def test_store_twice_keeps_one_row_with_latest_content(self):
        self.assertEqual(store_message_sync(self.conn, _payload(1, content="first"), [1, 0, 0], _iso(1)), "stored")
        self.assertEqual(store_message_sync(self.conn, _payload(1, content="second"), [0, 1, 0], _iso(2)), "stored")

        stats = count_messages_sync(self.conn)
        self.assertEqual(stats["total"], 1)
        row = _visible_message(self.conn, 1)
        self.assertEqual(row["content"], "second")
        self.assertEqual(row["updated_at_utc"], _iso(2))

    def test_older_write_does_not_overwrite_newer(self):
        store_message_sync(self.conn, _payload(1, content="newer"), None, _iso(5))
        store_message_sync(self.conn, _payload(1, content="older"), None, _iso(3))
        self.assertEqual(_visible_message(self.conn, 1)["content"], "newer")

    def test_missing_content_is_rejected_before_write(self):
        payload = _payload(1)
        payload["content"] = None
        with self.assertRaises(ValidationError):
            store_message_sync(self.conn, payload)
        payload = _payload(2)
        payload.pop("channel_id")
        with self.assertRaises(ValidationError):
            store_message_sync(self.conn, payload)
        payload = _payload(3)
        payload["message_type"] = "webhook"
        with self.assertRaises(ValidationError):
            store_message_sync(self.conn, payload)
        self.assertFalse(message_exists_sync(self.conn, 1))
        self.assertFalse(message_exists_sync(self.conn, 2))
        self.assertFalse(message_exists_sync(self.conn, 3))

    def test_null_embedding_is_stored(self):
        store_message_sync(self.conn, _payload(1), None)
        self.assertTrue(message_exists_sync(self.conn, 1))
        self.assertEqual(count_messages_sync(self.conn)["embedded"], 0)
        self.assertEqual(find_similar_sync(self.conn, [1, 0, 0], 1), [])

    def test_opted_out_author_is_skipped(self):
        set_opt_out_sync(self.conn, 10, True)
        self.assertEqual(store_message_sync(self.conn, _payload(1, author_id=10)), "skipped")
        self.assertFalse(message_exists_sync(self.conn, 1))

    def test_opt_out_hides_history_and_opt_in_does_not_restore_it(self):
        store_message_sync(self.conn, _payload(1, author_id=10), [1, 0, 0])
        store_message_sync(self.conn, _payload(2, author_id=10, offset=10), [1, 0, 0])
        store_message_sync(self.conn, _payload(3, author_id=20, offset=20), [1, 0, 0])

        self.assertEqual(set_opt_out_sync(self.conn, 10, True), 2)
        self.assertEqual(self._ids(find_similar_sync(self.conn, [1, 0, 0], 1)), [3])
        self.assertEqual(self._ids(fetch_recent_messages_sync(self.conn, 1)), [3])

        self.assertEqual(set_opt_out_sync(self.conn, 10, False), 0)
        self.assertFalse(is_opted_out_sync(self.conn, 10))
        self.assertIsNone(_visible_message(self.conn, 1))
        self.assertEqual(self._ids(find_similar_sync(self.conn, [1, 0, 0], 1)), [3])

        store_message_sync(self.conn, _payload(4, author_id=10, offset=30), [1, 0, 0])
        self.assertEqual(self._ids(fetch_recent_messages_sync(self.conn, 1)), [4, 3])

    def test_failed_opt_out_leaves_nothing_half_done(self):
        store_message_sync(self.conn, _payload(1, author_id=10))
        self.conn.execute(
            """
            CREATE TRIGGER block_hide BEFORE UPDATE OF deleted_at_utc ON messages
            BEGIN
                SELECT RAISE(ABORT, 'blocked');
            END
            """
        )
        self.conn.commit()

        with self.assertRaises(StorageError):
            set_opt_out_sync(self.conn, 10, True)

        self.assertFalse(is_opted_out_sync(self.conn, 10))
        self.assertIsNotNone(_visible_message(self.conn, 1))

    def test_upsert_user_leaves_opt_out_alone_unless_passed(self):
        upsert_user_sync(self.conn, {"id": 10, "username": "alice"})
        set_opt_out_sync(self.conn, 10, True)
        upsert_user_sync(self.conn, {"id": 10, "username": "alice2", "display_name": "Alice"})

        user = get_user_sync(self.conn, 10)
        self.assertTrue(user["opt_out"])
        self.assertEqual(user["username"], "alice2")

        upsert_user_sync(self.conn, {"id": 10, "username": "alice2"}, opt_out=False)
        self.assertFalse(get_user_sync(self.conn, 10)["opt_out"])

    def test_soft_delete_hides_message_everywhere(self):
        store_message_sync(self.conn, _payload(1), [1, 0, 0])
        store_message_sync(self.conn, _payload(2, offset=5), [1, 0, 0])

        self.assertTrue(delete_message_sync(self.conn, 1))
        self.assertFalse(delete_message_sync(self.conn, 1))
        self.assertTrue(message_exists_sync(self.conn, 1))
        self.assertEqual(self._ids(find_similar_sync(self.conn, [1, 0, 0], 1)), [2])
        self.assertEqual(self._ids(fetch_messages_in_time_range_sync(self.conn, 100)), [2])
        self.assertEqual(count_messages_sync(self.conn)["deleted"], 1)

    def test_bulk_delete_counts_only_live_rows(self):
        for i in range(1, 4):
            store_message_sync(self.conn, _payload(i, offset=i))
        delete_message_sync(self.conn, 2)
        self.assertEqual(delete_messages_sync(self.conn, [1, 2, 3, 99]), 2)
        self.assertEqual(delete_messages_sync(self.conn, []), 0)

    def test_update_on_deleted_message_is_noop(self):
        store_message_sync(self.conn, _payload(1, content="before"))
        delete_message_sync(self.conn, 1)
        self.assertFalse(update_message_sync(self.conn, 1, "after", [1, 0, 0]))
        self.assertFalse(update_message_sync(self.conn, 404, "missing"))
        row = self.conn.execute("SELECT content FROM messages WHERE message_id = 1").fetchone()
        self.assertEqual(row[0], "before")

    def test_update_rewrites_content_and_embedding(self):
        store_message_sync(self.conn, _payload(1, content="cats"), [1, 0, 0], _iso(1))
        store_message_sync(self.conn, _payload(2, content="dogs", offset=5), [0, 1, 0], _iso(1))

        self.assertTrue(update_message_sync(self.conn, 1, "now about dogs", [0, 1, 0], _iso(2)))
        top = find_similar_sync(self.conn, [0, 1, 0], 1, limit=2)
        self.assertEqual({r["message_id"] for r in top}, {1, 2})
        self.assertEqual(_visible_message(self.conn, 1)["content"], "now about dogs")

    def test_similarity_ties_prefer_newer_messages(self):
        store_message_sync(self.conn, _payload(1, offset=0), [1, 0, 0])
        store_message_sync(self.conn, _payload(2, offset=60), [1, 0, 0])
        store_message_sync(self.conn, _payload(3, offset=120), [-1, 0, 0])

        rows = find_similar_sync(self.conn, [1, 0, 0], 1, limit=3)
        self.assertEqual(self._ids(rows), [2, 1, 3])
        self.assertAlmostEqual(rows[0]["similarity"], 1.0, places=5)
        self.assertAlmostEqual(rows[2]["similarity"], 0.0, places=5)
        for row in rows:
            self.assertGreaterEqual(row["similarity"], 0.0)
            self.assertLessEqual(row["similarity"], 1.0)

    def test_similarity_respects_scope_and_dimension(self):
        store_message_sync(self.conn, _payload(1, server_id=1, channel_id=100), [1, 0, 0])
        store_message_sync(self.conn, _payload(2, server_id=1, channel_id=200), [1, 0, 0])
        store_message_sync(self.conn, _payload(3, server_id=2, channel_id=300), [1, 0, 0])
        store_message_sync(self.conn, _payload(4, server_id=1, channel_id=100), [1, 0, 0, 0])

        self.assertEqual(set(self._ids(find_similar_sync(self.conn, [1, 0, 0], 1))), {1, 2})
        self.assertEqual(self._ids(find_similar_sync(self.conn, [1, 0, 0], 1, channel_id=200)), [2])
        self.assertEqual(find_similar_sync(self.conn, [1, 0, 0], 1, limit=0), [])

    def test_non_finite_vectors_never_rank(self):
        store_message_sync(self.conn, _payload(1, offset=0), [0.0, 1.0, 0.0])
        store_message_sync(self.conn, _payload(2, offset=60), [1, 0, 0])
        store_message_sync(self.conn, _payload(3, offset=120), [float("nan"), 0, 0])
        corrupt = np.array([float("nan"), 1.0, 0.0], dtype="<f4").tobytes()
        self.conn.execute("UPDATE messages SET embedding = ? WHERE message_id = 2", (corrupt,))
        self.conn.commit()

        self.assertEqual(count_messages_sync(self.conn)["embedded"], 2)
        self.assertEqual(self._ids(find_similar_sync(self.conn, [1, 0, 0], 1, limit=3)), [1])
        self.assertEqual(find_similar_sync(self.conn, [float("nan"), 0, 0], 1), [])
        self.assertEqual(similarity_score(np.array([float("inf"), 0.0]), np.array([1.0, 0.0])), 0.5)

    def test_time_range_slices(self):
        for i in range(1, 6):
            store_message_sync(self.conn, _payload(i, offset=i * 10))

        before = fetch_messages_in_time_range_sync(self.conn, 100, before_ts=BASE_TS + 40, limit=2)
        self.assertEqual(self._ids(before), [2, 3])
        after = fetch_messages_in_time_range_sync(self.conn, 100, after_ts=BASE_TS + 20, limit=2, ascending=False)
        self.assertEqual(self._ids(after), [4, 3])
        latest = fetch_messages_in_time_range_sync(self.conn, 100, limit=2)
        self.assertEqual(self._ids(latest), [4, 5])

    def test_neighbors_stay_in_channel_and_stop_at_edges(self):
        store_message_sync(self.conn, _payload(1, channel_id=100, offset=0))
        store_message_sync(self.conn, _payload(2, channel_id=200, offset=5))
        store_message_sync(self.conn, _payload(3, channel_id=100, offset=10))
        store_message_sync(self.conn, _payload(4, channel_id=100, offset=20))

        anchor = _visible_message(self.conn, 3)
        before, after = fetch_neighbors_sync(self.conn, anchor, 3)
        self.assertEqual(self._ids(before), [1])
        self.assertEqual(self._ids(after), [4])
        self.assertEqual(fetch_neighbors_sync(self.conn, anchor, 0), ([], []))

    def test_server_context_lists_channels_and_active_users(self):
        upsert_server_sync(self.conn, {"id": 1, "name": "Guild", "member_count": 12})
        upsert_channel_sync(self.conn, {"id": 100, "server_id": 1, "name": "general"})
        upsert_channel_sync(self.conn, {"id": 200, "server_id": 1, "name": "random"})
        upsert_user_sync(self.conn, {"id": 10, "username": "alice"})
        upsert_user_sync(self.conn, {"id": 20, "username": "bob"})
        store_message_sync(self.conn, _payload(1, author_id=10))
        store_message_sync(self.conn, _payload(2, author_id=20))
        set_opt_out_sync(self.conn, 20, True)

        ctx = get_server_context_sync(self.conn, 1, since_ts=BASE_TS - 1)
        self.assertEqual(ctx["server"]["name"], "Guild")
        self.assertEqual([c["name"] for c in ctx["channels"]], ["general", "random"])
        self.assertEqual([u["username"] for u in ctx["recent_users"]], ["alice"])


if __name__ == "__main__":
    unittest.main()
