from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

import openai

from controller.errors import GenerationError


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    PROVIDER_ERROR = "provider_error"
    MALFORMED_RESPONSE = "malformed_response"
    EMPTY_RESPONSE = "empty_response"


@dataclass(frozen=True)
class GenerationResult:
    """Either text or an error kind, never both."""

    text: str | None = None
    error: ErrorKind | None = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None and self.text is not None

    def unwrap(self) -> str:
        if self.ok:
            return str(self.text)
        kind = self.error or ErrorKind.MALFORMED_RESPONSE
        raise GenerationError(kind.value, self.detail or f"generation failed: {kind.value}")


_ROLE_MAP = {"user": "user", "model": "assistant"}


def build_chat_messages(
    prompt_payload: str,
    history: Sequence[dict] = (),
    system_instruction: str | None = None,
) -> list[dict]:
    msgs: list[dict] = []
    if system_instruction:
        msgs.append({"role": "system", "content": system_instruction})
    for turn in history or ():
        role = _ROLE_MAP.get(str(turn.get("role") or ""), "user")
        msgs.append({"role": role, "content": str(turn.get("text") or "")})
    msgs.append({"role": "user", "content": prompt_payload})
    return msgs


class OpenAIGenerationClient:
    """
    Stateless chat-completion call. Returns the full reply text; length
    limits of the destination platform are applied by the caller.
    """

    def __init__(
        self,
        client: Any,
        model: str,
        *,
        timeout_seconds: float = 60.0,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
    ):
        self.client = client
        self.model = model
        self.timeout_seconds = float(timeout_seconds)
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature

    async def generate(
        self,
        prompt_payload: str,
        history: Sequence[dict] = (),
        system_instruction: str | None = None,
    ) -> GenerationResult:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": build_chat_messages(prompt_payload, history, system_instruction),
            "timeout": self.timeout_seconds,
        }
        if self.max_output_tokens:
            kwargs["max_tokens"] = int(self.max_output_tokens)
        if self.temperature is not None:
            kwargs["temperature"] = float(self.temperature)

        try:
            resp = await asyncio.to_thread(self.client.chat.completions.create, **kwargs)
        except openai.APITimeoutError as exc:
            return GenerationResult(error=ErrorKind.TIMEOUT, detail=str(exc))
        except openai.OpenAIError as exc:
            return GenerationResult(error=ErrorKind.PROVIDER_ERROR, detail=str(exc))

        try:
            content = resp.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as exc:
            return GenerationResult(error=ErrorKind.MALFORMED_RESPONSE, detail=str(exc))

        text = (content or "").strip()
        if not text:
            return GenerationResult(error=ErrorKind.EMPTY_RESPONSE, detail="model returned no text")
        return GenerationResult(text=text)
