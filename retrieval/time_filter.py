from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

_UNIT_SECONDS = {
    "minute": 60,
    "min": 60,
    "hour": 3600,
    "hr": 3600,
    "day": 86400,
    "week": 7 * 86400,
    "month": 31 * 86400,
}

_RELATIVE_RE = re.compile(r"\b(?:last|past)\s+(\d{1,3})\s*(minute|min|hour|hr|day|week|month)s?\b")


def _start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def derive_time_filter(query: str | None, now: datetime | None = None) -> float | None:
    """
    Lower bound (epoch seconds) implied by phrases like "yesterday",
    "last week" or "past 3 days". None when the query names no window.
    """
    text = (query or "").lower()
    if not text.strip():
        return None
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    m = _RELATIVE_RE.search(text)
    if m:
        n = max(1, int(m.group(1)))
        return (now - timedelta(seconds=n * _UNIT_SECONDS[m.group(2)])).timestamp()

    if any(k in text for k in ("today", "tonight", "this morning", "right now", "just now")):
        return _start_of_day(now).timestamp()
    if "yesterday" in text:
        return _start_of_day(now - timedelta(days=1)).timestamp()
    if any(k in text for k in ("this week", "past week", "recently", "lately")):
        return (now - timedelta(days=7)).timestamp()
    if "last week" in text:
        return (now - timedelta(days=14)).timestamp()
    if any(k in text for k in ("this month", "past month")):
        return (now - timedelta(days=31)).timestamp()
    if "last month" in text:
        return (now - timedelta(days=62)).timestamp()
    if any(k in text for k in ("this year", "past year")):
        return (now - timedelta(days=366)).timestamp()
    if "last year" in text:
        return (now - timedelta(days=731)).timestamp()
    return None
