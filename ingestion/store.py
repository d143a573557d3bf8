from __future__ import annotations

import sqlite3
from typing import Any


def get_backfill_done_sync(conn: sqlite3.Connection, channel_id: int) -> tuple[bool, str | None]:
    cur = conn.cursor()
    cur.execute(
        "SELECT backfill_done, last_backfill_at_utc FROM channel_state WHERE channel_id = ? LIMIT 1",
        (int(channel_id),),
    )
    row = cur.fetchone()
    if not row:
        return (False, None)
    return (int(row[0]) == 1, row[1])


def set_backfill_done_sync(conn: sqlite3.Connection, channel_id: int, iso_utc: str, backfilled_count: int = 0) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO channel_state (channel_id, backfill_done, last_backfill_at_utc, backfilled_count)
        VALUES (?, 1, ?, ?)
        ON CONFLICT(channel_id) DO UPDATE SET
            backfill_done=1,
            last_backfill_at_utc=excluded.last_backfill_at_utc,
            backfilled_count=channel_state.backfilled_count + excluded.backfilled_count
        """,
        (int(channel_id), iso_utc, int(backfilled_count)),
    )
    conn.commit()


def reset_backfill_done_sync(conn: sqlite3.Connection, channel_id: int) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE channel_state
        SET backfill_done = 0,
            last_backfill_at_utc = NULL
        WHERE channel_id = ?
        """,
        (int(channel_id),),
    )
    conn.commit()


def reset_all_backfill_done_sync(conn: sqlite3.Connection) -> int:
    cur = conn.cursor()
    cur.execute("UPDATE channel_state SET backfill_done = 0, last_backfill_at_utc = NULL")
    conn.commit()
    return int(cur.rowcount or 0)


def list_channel_state_sync(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT channel_id, backfill_done, last_backfill_at_utc, backfilled_count
        FROM channel_state
        ORDER BY channel_id ASC
        """
    )
    return [
        {
            "channel_id": int(r[0]),
            "backfill_done": int(r[1]) == 1,
            "last_backfill_at_utc": r[2],
            "backfilled_count": int(r[3] or 0),
        }
        for r in cur.fetchall()
    ]
