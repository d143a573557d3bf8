from __future__ import annotations

import sqlite3


def _has_table(conn: sqlite3.Connection, table: str) -> bool:
    cur = conn.cursor()
    cur.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name=? LIMIT 1", (table,))
    return cur.fetchone() is not None


def upgrade(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS servers (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            member_count INTEGER,
            created_at_utc TEXT NOT NULL,
            updated_at_utc TEXT NOT NULL
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS channels (
            id INTEGER PRIMARY KEY,
            server_id INTEGER,
            name TEXT NOT NULL,
            type TEXT,
            topic TEXT,
            created_at_utc TEXT NOT NULL,
            updated_at_utc TEXT NOT NULL
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY,
            username TEXT NOT NULL,
            display_name TEXT,
            avatar_url TEXT,
            opt_out INTEGER NOT NULL DEFAULT 0,
            created_at_utc TEXT NOT NULL,
            updated_at_utc TEXT NOT NULL
        )
        """
    )

    # server_id/channel_id/author_id/reply_to are weak references: rows can
    # arrive (backfill, DMs) before their parents are upserted.
    if not _has_table(conn, "messages"):
        cur.execute(
            """
            CREATE TABLE messages (
                message_id INTEGER PRIMARY KEY,
                server_id INTEGER,
                channel_id INTEGER NOT NULL,
                author_id INTEGER NOT NULL,
                content TEXT NOT NULL,
                embedding BLOB,
                embedding_dim INTEGER,
                message_type TEXT NOT NULL DEFAULT 'normal',
                reply_to INTEGER,
                created_at_utc TEXT NOT NULL,
                created_ts REAL NOT NULL,
                updated_at_utc TEXT NOT NULL,
                deleted_at_utc TEXT
            )
            """
        )

    cur.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_messages_scope_time
        ON messages(server_id, channel_id, created_ts)
        WHERE deleted_at_utc IS NULL
        """
    )
    cur.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_messages_channel_time
        ON messages(channel_id, created_ts)
        WHERE deleted_at_utc IS NULL
        """
    )
    cur.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_messages_author
        ON messages(author_id)
        WHERE deleted_at_utc IS NULL
        """
    )
    cur.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_messages_embedded
        ON messages(server_id, created_ts)
        WHERE deleted_at_utc IS NULL AND embedding IS NOT NULL
        """
    )
    conn.commit()
