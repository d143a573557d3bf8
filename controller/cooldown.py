from __future__ import annotations

import time
from typing import Callable

from config.defaults import DEFAULT_COOLDOWN_SECONDS


class CooldownTracker:
    """Per-user minimum interval between accepted requests. Rejections do not restart the clock."""

    def __init__(self, seconds: float = DEFAULT_COOLDOWN_SECONDS, *, clock: Callable[[], float] = time.monotonic):
        self.seconds = max(0.0, float(seconds))
        self.clock = clock
        self._last: dict[int, float] = {}

    def remaining(self, user_id: int, now: float | None = None) -> float:
        last = self._last.get(int(user_id))
        if last is None:
            return 0.0
        t = self.clock() if now is None else float(now)
        return max(0.0, self.seconds - (t - last))

    def try_acquire(self, user_id: int, now: float | None = None) -> tuple[bool, float]:
        """(accepted, seconds_remaining). Stamps the user only when accepted."""
        t = self.clock() if now is None else float(now)
        self._prune(t)
        left = self.remaining(user_id, t)
        if left > 0:
            return (False, left)
        if self.seconds > 0:
            self._last[int(user_id)] = t
        return (True, 0.0)

    def clear(self, user_id: int) -> None:
        self._last.pop(int(user_id), None)

    def _prune(self, now: float) -> None:
        # expired stamps carry no information
        expired = [uid for uid, last in self._last.items() if now - last >= self.seconds]
        for uid in expired:
            del self._last[uid]
