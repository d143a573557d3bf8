from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Sequence

import numpy as np

from config.defaults import MESSAGE_TYPES
from controller.errors import StorageError
from controller.errors import ValidationError
from retrieval.similarity import decode_embedding
from retrieval.similarity import encode_embedding
from retrieval.similarity import similarity_score


_MESSAGE_COLUMNS = """
    m.message_id, m.server_id, m.channel_id, m.author_id,
    u.username AS author_name, u.display_name AS author_display_name,
    c.name AS channel_name,
    m.content, m.message_type, m.reply_to,
    m.created_at_utc, m.created_ts, m.updated_at_utc, m.deleted_at_utc,
    COALESCE(u.opt_out, 0) AS author_opt_out
"""

_MESSAGE_FROM = """
    FROM messages m
    LEFT JOIN users u ON u.id = m.author_id
    LEFT JOIN channels c ON c.id = m.channel_id
"""

# Every read path goes through this filter: soft-deleted rows and rows from
# opted-out authors are invisible, retroactively.
_VISIBLE = "m.deleted_at_utc IS NULL AND COALESCE(u.opt_out, 0) = 0"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _rows_to_dicts(cur: sqlite3.Cursor, rows: list[tuple]) -> list[dict[str, Any]]:
    cols = [str(d[0]) for d in (cur.description or ())]
    return [{cols[i]: row[i] for i in range(len(cols))} for row in rows]


@contextmanager
def _storage_errors(conn: sqlite3.Connection, action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        try:
            conn.rollback()
        except sqlite3.Error:
            pass
        raise StorageError("storage_failed", f"{action} failed: {exc}") from exc


def _require_id(payload: dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if value is None or str(value).strip() == "":
        raise ValidationError("missing_field", f"message payload missing {key}")
    return int(value)


# =========================
# servers / channels / users
# =========================
def upsert_server_sync(conn: sqlite3.Connection, server: dict[str, Any], now_iso: str | None = None) -> None:
    now = now_iso or _utc_now_iso()
    with _storage_errors(conn, "upsert_server"):
        conn.execute(
            """
            INSERT INTO servers (id, name, member_count, created_at_utc, updated_at_utc)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name=excluded.name,
                member_count=excluded.member_count,
                updated_at_utc=excluded.updated_at_utc
            """,
            (int(server["id"]), str(server.get("name") or server["id"]), server.get("member_count"), now, now),
        )
        conn.commit()


def upsert_channel_sync(conn: sqlite3.Connection, channel: dict[str, Any], now_iso: str | None = None) -> None:
    now = now_iso or _utc_now_iso()
    with _storage_errors(conn, "upsert_channel"):
        conn.execute(
            """
            INSERT INTO channels (id, server_id, name, type, topic, created_at_utc, updated_at_utc)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                server_id=excluded.server_id,
                name=excluded.name,
                type=excluded.type,
                topic=excluded.topic,
                updated_at_utc=excluded.updated_at_utc
            """,
            (
                int(channel["id"]),
                channel.get("server_id"),
                str(channel.get("name") or channel["id"]),
                channel.get("type"),
                channel.get("topic"),
                now,
                now,
            ),
        )
        conn.commit()


def _ensure_user_row(cur: sqlite3.Cursor, user_id: int, now: str) -> None:
    cur.execute(
        """
        INSERT OR IGNORE INTO users (id, username, opt_out, created_at_utc, updated_at_utc)
        VALUES (?, ?, 0, ?, ?)
        """,
        (int(user_id), str(user_id), now, now),
    )


def _apply_opt_out(cur: sqlite3.Cursor, user_id: int, flag: bool, now: str) -> int:
    cur.execute(
        "UPDATE users SET opt_out = ?, updated_at_utc = ? WHERE id = ?",
        (1 if flag else 0, now, int(user_id)),
    )
    if not flag:
        # opting back in never resurrects previously hidden messages
        return 0
    cur.execute(
        """
        UPDATE messages
        SET deleted_at_utc = ?
        WHERE author_id = ? AND deleted_at_utc IS NULL
        """,
        (now, int(user_id)),
    )
    return int(cur.rowcount or 0)


def upsert_user_sync(
    conn: sqlite3.Connection,
    user: dict[str, Any],
    *,
    opt_out: bool | None = None,
    now_iso: str | None = None,
) -> int:
    """
    Insert or refresh user metadata. opt_out is only touched when passed
    explicitly; returns the number of messages soft-deleted by that change.
    """
    now = now_iso or _utc_now_iso()
    user_id = int(user["id"])
    with _storage_errors(conn, "upsert_user"):
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO users (id, username, display_name, avatar_url, opt_out, created_at_utc, updated_at_utc)
            VALUES (?, ?, ?, ?, 0, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                username=excluded.username,
                display_name=excluded.display_name,
                avatar_url=excluded.avatar_url,
                updated_at_utc=excluded.updated_at_utc
            """,
            (
                user_id,
                str(user.get("username") or user_id),
                user.get("display_name"),
                user.get("avatar_url"),
                now,
                now,
            ),
        )
        hidden = _apply_opt_out(cur, user_id, bool(opt_out), now) if opt_out is not None else 0
        conn.commit()
    return hidden


def set_opt_out_sync(conn: sqlite3.Connection, user_id: int, flag: bool, now_iso: str | None = None) -> int:
    """Flip the flag and (when opting out) hide every live message, in one transaction."""
    now = now_iso or _utc_now_iso()
    with _storage_errors(conn, "set_opt_out"):
        cur = conn.cursor()
        _ensure_user_row(cur, int(user_id), now)
        hidden = _apply_opt_out(cur, int(user_id), bool(flag), now)
        conn.commit()
    return hidden


def get_user_sync(conn: sqlite3.Connection, user_id: int) -> dict[str, Any] | None:
    with _storage_errors(conn, "get_user"):
        cur = conn.cursor()
        cur.execute(
            """
            SELECT id, username, display_name, avatar_url, opt_out, created_at_utc, updated_at_utc
            FROM users WHERE id = ? LIMIT 1
            """,
            (int(user_id),),
        )
        rows = _rows_to_dicts(cur, cur.fetchall())
    if not rows:
        return None
    out = rows[0]
    out["opt_out"] = bool(out["opt_out"])
    return out


def is_opted_out_sync(conn: sqlite3.Connection, user_id: int) -> bool:
    cur = conn.cursor()
    cur.execute("SELECT opt_out FROM users WHERE id = ? LIMIT 1", (int(user_id),))
    row = cur.fetchone()
    return bool(row and int(row[0]) == 1)


# =========================
# messages: writes
# =========================
def validate_message_payload(payload: dict[str, Any]) -> tuple[int, int, int, str, str, float, str]:
    """(message_id, channel_id, author_id, content, created_at_utc, created_ts, message_type), or ValidationError."""
    message_id = _require_id(payload, "message_id")
    channel_id = _require_id(payload, "channel_id")
    author_id = _require_id(payload, "author_id")
    content = payload.get("content")
    if content is None:
        raise ValidationError("missing_field", "message payload missing content")
    created_at_utc = str(payload.get("created_at_utc") or "").strip()
    created_ts = payload.get("created_ts")
    if not created_at_utc or created_ts is None:
        raise ValidationError("missing_field", "message payload missing created_at_utc/created_ts")
    message_type = str(payload.get("message_type") or "normal")
    if message_type not in MESSAGE_TYPES:
        raise ValidationError("invalid_message_type", f"unknown message_type {message_type!r}")
    return (message_id, channel_id, author_id, str(content), created_at_utc, float(created_ts), message_type)


def store_message_sync(
    conn: sqlite3.Connection,
    payload: dict[str, Any],
    embedding: Sequence[float] | None = None,
    now_iso: str | None = None,
) -> str:
    """
    Idempotent insert. Returns "skipped" for opted-out authors, else "stored".

    A duplicate message_id overwrites content + embedding + updated_at, unless
    the stored row was written later than this call (last writer wins).
    """
    message_id, channel_id, author_id, content, created_at_utc, created_ts, message_type = (
        validate_message_payload(payload)
    )

    now = now_iso or _utc_now_iso()
    blob = encode_embedding(embedding)
    dim = len(embedding) if blob is not None and embedding is not None else None

    with _storage_errors(conn, "store_message"):
        if is_opted_out_sync(conn, author_id):
            return "skipped"
        conn.execute(
            """
            INSERT INTO messages (
                message_id, server_id, channel_id, author_id,
                content, embedding, embedding_dim,
                message_type, reply_to,
                created_at_utc, created_ts, updated_at_utc
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(message_id) DO UPDATE SET
                content=excluded.content,
                embedding=excluded.embedding,
                embedding_dim=excluded.embedding_dim,
                updated_at_utc=excluded.updated_at_utc
            WHERE excluded.updated_at_utc >= messages.updated_at_utc
            """,
            (
                message_id,
                payload.get("server_id"),
                channel_id,
                author_id,
                str(content),
                blob,
                dim,
                message_type,
                payload.get("reply_to"),
                created_at_utc,
                float(created_ts),
                now,
            ),
        )
        conn.commit()
    return "stored"


def update_message_sync(
    conn: sqlite3.Connection,
    message_id: int,
    content: str,
    embedding: Sequence[float] | None = None,
    now_iso: str | None = None,
) -> bool:
    """Rewrite content + embedding. False when the row is missing or soft-deleted."""
    now = now_iso or _utc_now_iso()
    blob = encode_embedding(embedding)
    dim = len(embedding) if blob is not None and embedding is not None else None
    with _storage_errors(conn, "update_message"):
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE messages
            SET content = ?, embedding = ?, embedding_dim = ?, updated_at_utc = ?
            WHERE message_id = ?
              AND deleted_at_utc IS NULL
              AND updated_at_utc <= ?
            """,
            (str(content or ""), blob, dim, now, int(message_id), now),
        )
        changed = int(cur.rowcount or 0) > 0
        conn.commit()
    return changed


def delete_message_sync(conn: sqlite3.Connection, message_id: int, now_iso: str | None = None) -> bool:
    now = now_iso or _utc_now_iso()
    with _storage_errors(conn, "delete_message"):
        cur = conn.cursor()
        cur.execute(
            "UPDATE messages SET deleted_at_utc = ? WHERE message_id = ? AND deleted_at_utc IS NULL",
            (now, int(message_id)),
        )
        changed = int(cur.rowcount or 0) > 0
        conn.commit()
    return changed


def delete_messages_sync(conn: sqlite3.Connection, message_ids: list[int], now_iso: str | None = None) -> int:
    ids = [int(i) for i in message_ids or []]
    if not ids:
        return 0
    now = now_iso or _utc_now_iso()
    with _storage_errors(conn, "delete_messages"):
        cur = conn.cursor()
        cur.execute(
            f"""
            UPDATE messages SET deleted_at_utc = ?
            WHERE deleted_at_utc IS NULL AND message_id IN ({','.join(['?'] * len(ids))})
            """,
            (now, *ids),
        )
        changed = int(cur.rowcount or 0)
        conn.commit()
    return changed


# =========================
# messages: reads
# =========================
def message_exists_sync(conn: sqlite3.Connection, message_id: int) -> bool:
    cur = conn.cursor()
    cur.execute("SELECT 1 FROM messages WHERE message_id = ? LIMIT 1", (int(message_id),))
    return cur.fetchone() is not None


def find_similar_sync(
    conn: sqlite3.Connection,
    query_embedding: Sequence[float],
    server_id: int,
    channel_id: int | None = None,
    limit: int = 10,
    since_ts: float | None = None,
) -> list[dict[str, Any]]:
    """
    Brute-force cosine ranking over visible, embedded rows in scope.

    Each result carries a "similarity" in [0, 1]. Ties order by created_ts
    descending. Rows embedded with a different dimension, or holding a
    non-finite vector, are skipped.
    """
    lim = int(limit or 0)
    if lim <= 0 or server_id is None:
        return []
    query = np.asarray(query_embedding, dtype="<f4")
    if query.ndim != 1 or query.size == 0 or not np.isfinite(query).all():
        return []

    where = [_VISIBLE, "m.embedding IS NOT NULL", "m.server_id = ?"]
    params: list[Any] = [int(server_id)]
    if channel_id is not None:
        where.append("m.channel_id = ?")
        params.append(int(channel_id))
    if since_ts is not None:
        where.append("m.created_ts >= ?")
        params.append(float(since_ts))

    with _storage_errors(conn, "find_similar"):
        cur = conn.cursor()
        cur.execute(
            f"SELECT {_MESSAGE_COLUMNS}, m.embedding AS _embedding {_MESSAGE_FROM} WHERE {' AND '.join(where)}",
            tuple(params),
        )
        rows = _rows_to_dicts(cur, cur.fetchall())

    scored: list[dict[str, Any]] = []
    for row in rows:
        vec = decode_embedding(row.pop("_embedding"))
        if vec is None or vec.shape != query.shape:
            continue
        row["similarity"] = similarity_score(query, vec)
        scored.append(row)

    scored.sort(key=lambda r: (-r["similarity"], -float(r["created_ts"]), -int(r["message_id"])))
    return scored[:lim]


def fetch_messages_in_time_range_sync(
    conn: sqlite3.Connection,
    channel_id: int,
    *,
    before_ts: float | None = None,
    after_ts: float | None = None,
    limit: int = 50,
    ascending: bool = True,
) -> list[dict[str, Any]]:
    """
    Temporal slice of a channel. With only before_ts, returns the messages
    closest before it; with only after_ts, the ones closest after it; with
    neither, the latest. Output order follows `ascending`.
    """
    lim = max(0, int(limit or 0))
    if lim == 0:
        return []

    where = [_VISIBLE, "m.channel_id = ?"]
    params: list[Any] = [int(channel_id)]
    if before_ts is not None:
        where.append("m.created_ts < ?")
        params.append(float(before_ts))
    if after_ts is not None:
        where.append("m.created_ts > ?")
        params.append(float(after_ts))
    anchor_desc = after_ts is None
    direction = "DESC" if anchor_desc else "ASC"

    with _storage_errors(conn, "fetch_messages_in_time_range"):
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT {_MESSAGE_COLUMNS} {_MESSAGE_FROM}
            WHERE {' AND '.join(where)}
            ORDER BY m.created_ts {direction}, m.message_id {direction}
            LIMIT ?
            """,
            (*params, lim),
        )
        rows = _rows_to_dicts(cur, cur.fetchall())

    if anchor_desc == ascending:
        rows.reverse()
    return rows


def fetch_neighbors_sync(
    conn: sqlite3.Connection,
    anchor: dict[str, Any],
    window: int,
) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Up to `window` visible messages right before and right after anchor, same channel only."""
    w = max(0, int(window or 0))
    if w == 0:
        return ([], [])
    ts = float(anchor["created_ts"])
    mid = int(anchor["message_id"])
    cid = int(anchor["channel_id"])

    with _storage_errors(conn, "fetch_neighbors"):
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT {_MESSAGE_COLUMNS} {_MESSAGE_FROM}
            WHERE {_VISIBLE}
              AND m.channel_id = ?
              AND (m.created_ts < ? OR (m.created_ts = ? AND m.message_id < ?))
            ORDER BY m.created_ts DESC, m.message_id DESC
            LIMIT ?
            """,
            (cid, ts, ts, mid, w),
        )
        before = _rows_to_dicts(cur, cur.fetchall())
        before.reverse()
        cur.execute(
            f"""
            SELECT {_MESSAGE_COLUMNS} {_MESSAGE_FROM}
            WHERE {_VISIBLE}
              AND m.channel_id = ?
              AND (m.created_ts > ? OR (m.created_ts = ? AND m.message_id > ?))
            ORDER BY m.created_ts ASC, m.message_id ASC
            LIMIT ?
            """,
            (cid, ts, ts, mid, w),
        )
        after = _rows_to_dicts(cur, cur.fetchall())
    return (before, after)


def fetch_recent_messages_sync(
    conn: sqlite3.Connection,
    server_id: int,
    channel_id: int | None = None,
    limit: int = 10,
    since_ts: float | None = None,
) -> list[dict[str, Any]]:
    """Latest visible messages in scope, newest first."""
    lim = max(0, int(limit or 0))
    if lim == 0 or server_id is None:
        return []
    where = [_VISIBLE, "m.server_id = ?", "TRIM(m.content) != ''"]
    params: list[Any] = [int(server_id)]
    if channel_id is not None:
        where.append("m.channel_id = ?")
        params.append(int(channel_id))
    if since_ts is not None:
        where.append("m.created_ts >= ?")
        params.append(float(since_ts))

    with _storage_errors(conn, "fetch_recent_messages"):
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT {_MESSAGE_COLUMNS} {_MESSAGE_FROM}
            WHERE {' AND '.join(where)}
            ORDER BY m.created_ts DESC, m.message_id DESC
            LIMIT ?
            """,
            (*params, lim),
        )
        return _rows_to_dicts(cur, cur.fetchall())


def get_server_context_sync(
    conn: sqlite3.Connection,
    server_id: int,
    *,
    since_ts: float,
    user_limit: int = 50,
) -> dict[str, Any]:
    with _storage_errors(conn, "get_server_context"):
        cur = conn.cursor()
        cur.execute(
            """
            SELECT s.id, s.name, s.member_count, COUNT(c.id) AS channel_count
            FROM servers s
            LEFT JOIN channels c ON c.server_id = s.id
            WHERE s.id = ?
            GROUP BY s.id
            """,
            (int(server_id),),
        )
        servers = _rows_to_dicts(cur, cur.fetchall())

        cur.execute(
            "SELECT id, name, type, topic FROM channels WHERE server_id = ? ORDER BY name",
            (int(server_id),),
        )
        channels = _rows_to_dicts(cur, cur.fetchall())

        cur.execute(
            """
            SELECT DISTINCT u.username, u.display_name
            FROM users u
            JOIN messages m ON m.author_id = u.id
            WHERE m.server_id = ?
              AND m.created_ts >= ?
              AND m.deleted_at_utc IS NULL
              AND u.opt_out = 0
            ORDER BY u.username
            LIMIT ?
            """,
            (int(server_id), float(since_ts), int(user_limit)),
        )
        users = _rows_to_dicts(cur, cur.fetchall())

    return {
        "server": servers[0] if servers else None,
        "channels": channels,
        "recent_users": users,
    }


def count_messages_sync(conn: sqlite3.Connection) -> dict[str, int]:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT
            COUNT(*),
            SUM(CASE WHEN deleted_at_utc IS NULL THEN 1 ELSE 0 END),
            SUM(CASE WHEN deleted_at_utc IS NOT NULL THEN 1 ELSE 0 END),
            SUM(CASE WHEN deleted_at_utc IS NULL AND embedding IS NOT NULL THEN 1 ELSE 0 END)
        FROM messages
        """
    )
    total, live, deleted, embedded = cur.fetchone()
    cur.execute("SELECT COUNT(*) FROM users WHERE opt_out = 1")
    opted_out = cur.fetchone()[0]
    return {
        "total": int(total or 0),
        "live": int(live or 0),
        "deleted": int(deleted or 0),
        "embedded": int(embedded or 0),
        "opted_out_users": int(opted_out or 0),
    }
