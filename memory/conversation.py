"""
Per-conversation chat history kept in process memory.

Nothing here is persisted: a restart forgets every conversation. That is a
deliberate trade for simplicity and latency; durable history lives in the
message store and reaches the model through retrieval instead.

Each key holds at most `max_turns` turns. Appending past the cap drops the
oldest turns first (FIFO), regardless of how often a key is read.
"""
from __future__ import annotations

from collections import deque

from config.defaults import DEFAULT_HISTORY_MAX_TURNS
from config.defaults import HISTORY_SCOPES
from controller.errors import ValidationError
from memory.locks import KeyedLocks

ROLES = ("user", "model")


def build_conversation_key(
    policy: str,
    *,
    guild_id: int | None,
    channel_id: int | None,
    user_id: int,
) -> str:
    """
    policy:
      - user:          one history per user, everywhere
      - channel:       one shared history per channel
      - user_channel:  one history per user per channel (default)
    """
    p = (policy or "").strip().lower()
    if p not in HISTORY_SCOPES:
        raise ValidationError("invalid_history_scope", f"unknown history scope: {policy!r}")
    where = f"{int(guild_id) if guild_id is not None else 'dm'}:{int(channel_id) if channel_id is not None else 'none'}"
    if p == "user":
        return f"user:{int(user_id)}"
    if p == "channel":
        return f"channel:{where}"
    return f"user_channel:{where}:{int(user_id)}"


class ConversationMemory:
    def __init__(self, max_turns: int = DEFAULT_HISTORY_MAX_TURNS):
        if int(max_turns) <= 0:
            raise ValidationError("invalid_max_turns", "max_turns must be positive")
        self.max_turns = int(max_turns)
        self._turns: dict[str, deque[dict]] = {}
        self.locks = KeyedLocks()

    def _log(self, key: str) -> deque[dict]:
        log = self._turns.get(key)
        if log is None:
            log = deque(maxlen=self.max_turns)
            self._turns[key] = log
        return log

    def get(self, key: str) -> list[dict]:
        """Ordered copy of the turns for key; unknown keys read as empty and are not created."""
        log = self._turns.get(key)
        if log is None:
            return []
        return [dict(t) for t in log]

    def append(self, key: str, role: str, text: str) -> None:
        if role not in ROLES:
            raise ValidationError("invalid_role", f"role must be one of {ROLES}, got {role!r}")
        self._log(key).append({"role": role, "text": str(text or "")})

    async def append_exchange(self, key: str, user_text: str, model_text: str) -> None:
        """Append a (user, model) pair as one step under the key's lock."""
        async with self.locks.hold(key):
            self.append(key, "user", user_text)
            self.append(key, "model", model_text)

    def reset(self, key: str) -> None:
        self._turns.pop(key, None)
