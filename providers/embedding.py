from __future__ import annotations

import asyncio
from typing import Any

import openai

from controller.errors import ProviderError


class OpenAIEmbeddingProvider:
    """
    Text -> fixed-length vector through an OpenAI-compatible embeddings
    endpoint (Gemini's compatibility layer in production).

    embed() returns None for empty input and raises ProviderError on any
    provider-side failure; callers decide whether that is fatal.
    """

    def __init__(self, client: Any, model: str, *, dimensions: int | None = None):
        self.client = client
        self.model = model
        self.dimensions = int(dimensions) if dimensions else None

    async def embed(self, text: str | None) -> list[float] | None:
        clean = " ".join((text or "").split())
        if not clean:
            return None

        try:
            resp = await asyncio.to_thread(self.client.embeddings.create, model=self.model, input=clean)
        except openai.APITimeoutError as exc:
            raise ProviderError("embedding_timeout", f"embedding request timed out: {exc}") from exc
        except openai.OpenAIError as exc:
            raise ProviderError("embedding_failed", f"embedding request failed: {exc}") from exc

        try:
            values = [float(v) for v in resp.data[0].embedding]
        except (AttributeError, IndexError, TypeError, ValueError) as exc:
            raise ProviderError("embedding_malformed", f"unexpected embedding response: {exc}") from exc

        if not values:
            raise ProviderError("embedding_malformed", "embedding response was empty")
        if self.dimensions and len(values) != self.dimensions:
            raise ProviderError(
                "embedding_dimension",
                f"expected {self.dimensions} dimensions, got {len(values)}",
            )
        return values


async def embed_or_none(provider: Any, text: str | None) -> list[float] | None:
    """Best-effort embedding: provider failures are logged and become None."""
    try:
        return await provider.embed(text)
    except ProviderError as e:
        print(f"[Embed] {e.code}: {e}")
        return None
