from __future__ import annotations

from typing import Any

from config.defaults import DEFAULT_PROMPT_MAX_CHARS, DEFAULT_RETRIEVAL_LINE_CHARS
from retrieval.service import format_message_line

_ROLE_LABELS = {"user": "User", "model": "Assistant"}

SCOPE_HEADER = "Server context:"
RETRIEVED_HEADER = "Relevant past messages (oldest first):"
HISTORY_HEADER = "Previous conversation:"
QUESTION_HEADER = "User question:"


def format_server_context(ctx: dict[str, Any] | None, *, max_channels: int = 25, max_users: int = 25) -> str:
    if not ctx:
        return ""
    lines: list[str] = []
    server = ctx.get("server") or {}
    if server:
        name = server.get("name") or server.get("id")
        count = server.get("member_count")
        lines.append(f"Server: {name}" + (f" ({count} members)" if count else ""))
    channels = [c.get("name") for c in (ctx.get("channels") or []) if c.get("name")]
    if channels:
        shown = ", ".join(f"#{n}" for n in channels[:max_channels])
        more = f" (+{len(channels) - max_channels} more)" if len(channels) > max_channels else ""
        lines.append(f"Channels: {shown}{more}")
    users = [
        u.get("display_name") or u.get("username")
        for u in (ctx.get("recent_users") or [])
        if u.get("display_name") or u.get("username")
    ]
    if users:
        shown = ", ".join(users[:max_users])
        more = f" (+{len(users) - max_users} more)" if len(users) > max_users else ""
        lines.append(f"Recently active: {shown}{more}")
    return "\n".join(lines)


def format_turn(turn: dict[str, Any]) -> str:
    label = _ROLE_LABELS.get(str(turn.get("role") or ""), "User")
    text = " ".join(str(turn.get("text") or "").split())
    return f"{label}: {text}"


def _render(preamble: str, blocks: list[tuple[str, list[str]]], question: str) -> str:
    parts = [preamble] if preamble else []
    for header, lines in blocks:
        if lines:
            parts.append(header + "\n" + "\n".join(lines))
    parts.append(f"{QUESTION_HEADER}\n{question}")
    return "\n\n".join(parts)


def compose_prompt(
    system_preamble: str,
    scope_context: str,
    retrieved_messages: list[dict[str, Any]],
    conversation_turns: list[dict[str, Any]],
    user_message: str,
    max_chars: int = DEFAULT_PROMPT_MAX_CHARS,
    *,
    line_chars: int = DEFAULT_RETRIEVAL_LINE_CHARS,
) -> str:
    """
    Single text payload, in order:
    preamble, server context, retrieved messages, prior turns, current message.

    When the result exceeds max_chars, the oldest line of whichever context
    block is currently largest is dropped, repeatedly. Once a block is down to
    one line, characters come off the front of that line instead. The
    preamble and the current message are never cut.
    """
    preamble = (system_preamble or "").strip()
    question = (user_message or "").strip()
    blocks: list[tuple[str, list[str]]] = [
        (SCOPE_HEADER, [ln for ln in (scope_context or "").splitlines() if ln.strip()]),
        (RETRIEVED_HEADER, [format_message_line(m, line_chars) for m in (retrieved_messages or [])]),
        (HISTORY_HEADER, [format_turn(t) for t in (conversation_turns or [])]),
    ]

    text = _render(preamble, blocks, question)
    while max_chars > 0 and len(text) > max_chars:
        candidates = [lines for _, lines in blocks if lines]
        if not candidates:
            break
        largest = max(candidates, key=lambda lines: sum(len(ln) + 1 for ln in lines))
        if len(largest) > 1:
            largest.pop(0)
        else:
            overflow = len(text) - max_chars
            line = largest[0]
            if overflow + 3 >= len(line):
                largest.pop(0)
            else:
                largest[0] = "..." + line[overflow + 3:]
        text = _render(preamble, blocks, question)
    return text
