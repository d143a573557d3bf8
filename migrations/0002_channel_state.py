from __future__ import annotations

import sqlite3


def _table_columns(conn: sqlite3.Connection, table: str) -> list[str]:
    cur = conn.cursor()
    cur.execute(f"PRAGMA table_info({table})")
    return [str(row[1]) for row in cur.fetchall()]


def upgrade(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS channel_state (
            channel_id INTEGER PRIMARY KEY,
            backfill_done INTEGER NOT NULL DEFAULT 0,
            last_backfill_at_utc TEXT
        )
        """
    )
    if "backfilled_count" not in _table_columns(conn, "channel_state"):
        cur.execute("ALTER TABLE channel_state ADD COLUMN backfilled_count INTEGER NOT NULL DEFAULT 0")
    conn.commit()
