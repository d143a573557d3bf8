from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from controller.errors import PrivacyViolation
from providers.embedding import embed_or_none
from retrieval.time_filter import derive_time_filter


@dataclass(frozen=True)
class RetrievalScope:
    server_id: int | None
    channel_id: int | None = None
    # the message being answered; never its own context
    exclude_message_ids: frozenset[int] = frozenset()

    def is_empty(self) -> bool:
        return self.server_id is None


def message_identity(row: dict[str, Any]) -> tuple[float, int, str]:
    """Structural identity used to collapse copies pulled in by overlapping windows."""
    return (
        round(float(row.get("created_ts") or 0.0), 6),
        int(row.get("author_id") or 0),
        str(row.get("content") or ""),
    )


def dedupe_messages(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    First occurrence wins, except that a copy carrying a similarity score
    replaces one without (a hit that was also someone else's neighbour).
    """
    out: dict[tuple[float, int, str], dict[str, Any]] = {}
    for row in rows:
        key = message_identity(row)
        existing = out.get(key)
        if existing is None:
            out[key] = row
        elif "similarity" not in existing and "similarity" in row:
            out[key] = row
    return list(out.values())


def ensure_visible(rows: list[dict[str, Any]]) -> None:
    for row in rows:
        if row.get("deleted_at_utc"):
            raise PrivacyViolation(
                "deleted_in_context",
                f"soft-deleted message {row.get('message_id')} reached retrieval output",
            )
        if int(row.get("author_opt_out") or 0):
            raise PrivacyViolation(
                "opted_out_in_context",
                f"message {row.get('message_id')} from opted-out author {row.get('author_id')} reached retrieval output",
            )


def _without(rows: list[dict[str, Any]], exclude: frozenset[int]) -> list[dict[str, Any]]:
    if not exclude:
        return rows
    return [r for r in rows if int(r.get("message_id") or 0) not in exclude]


def _chronological(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(rows, key=lambda r: (float(r.get("created_ts") or 0.0), int(r.get("message_id") or 0)))


async def retrieve_context(
    query_text: str,
    scope: RetrievalScope,
    *,
    message_service,
    embedder,
    limit: int = 10,
    window: int = 3,
    now: datetime | None = None,
    use_time_filter: bool = True,
) -> list[dict[str, Any]]:
    """
    Relevant prior messages for query_text, oldest first.

    1. embed the query (failure -> latest `limit` messages in scope instead)
    2. restrict to the time window the query names, if any
    3. rank by similarity, then pull up to `window` same-channel neighbours
       around each hit
    4. collapse duplicates and return in timestamp order
    """
    lim = int(limit or 0)
    if scope.is_empty() or lim <= 0:
        return []

    since_ts = derive_time_filter(query_text, now) if use_time_filter else None
    exclude = scope.exclude_message_ids
    fetch_lim = lim + len(exclude)
    embedding = await embed_or_none(embedder, query_text)

    if embedding is None:
        rows = await message_service.fetch_recent_messages(
            scope.server_id,
            scope.channel_id,
            fetch_lim,
            since_ts,
        )
        rows = _chronological(_without(rows, exclude))[-lim:]
        print(f"[Retrieval] no query embedding; recency fallback rows={len(rows)}")
        ensure_visible(rows)
        return rows

    hits = await message_service.find_similar(
        embedding,
        scope.server_id,
        scope.channel_id,
        fetch_lim,
        since_ts,
    )
    hits = _without(hits, exclude)[:lim]

    expanded: list[dict[str, Any]] = []
    for hit in hits:
        before, after = await message_service.fetch_neighbors(hit, window)
        expanded.extend(before)
        expanded.append(hit)
        expanded.extend(after)

    rows = dedupe_messages(_without(expanded, exclude))
    ensure_visible(rows)
    print(
        f"[Retrieval] hits={len(hits)} expanded={len(expanded)} unique={len(rows)} "
        f"window={window} since_ts={since_ts}"
    )
    return _chronological(rows)


def shorten_line(text: str, max_chars: int) -> str:
    clean = " ".join((text or "").split())
    if max_chars <= 0 or len(clean) <= max_chars:
        return clean
    head_len = int(max_chars * 0.65)
    tail_len = max_chars - head_len - 3
    head = clean[:head_len].rstrip()
    tail = clean[-tail_len:].lstrip() if tail_len > 0 else ""
    return f"{head}...{tail}"


def format_message_line(row: dict[str, Any], max_line_chars: int = 400) -> str:
    ts = str(row.get("created_at_utc") or "")
    if "T" in ts:
        day, clock = ts.split("T", 1)
        ts = f"{day} {clock[:5]}"
    who = row.get("author_display_name") or row.get("author_name") or f"<@{row.get('author_id')}>"
    channel = row.get("channel_name")
    where = f" #{channel}" if channel else ""
    return f"[{ts or 'unknown-date'}]{where} {who}: {shorten_line(str(row.get('content') or ''), max_line_chars)}"
