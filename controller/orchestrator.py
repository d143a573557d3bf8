from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from config.defaults import (
    DEFAULT_PROMPT_MAX_CHARS,
    DEFAULT_RETRIEVAL_LIMIT,
    DEFAULT_RETRIEVAL_WINDOW,
    DEFAULT_SERVER_CONTEXT_DAYS,
    DEFAULT_SERVER_CONTEXT_USERS,
)
from controller.cooldown import CooldownTracker
from controller.errors import StorageError
from controller.persona import Persona, build_system_preamble, default_persona
from controller.prompt_assembly import compose_prompt, format_server_context
from memory.conversation import ConversationMemory
from retrieval.service import RetrievalScope, retrieve_context


class RequestState(str, Enum):
    RECEIVED = "received"
    COOLDOWN_CHECK = "cooldown_check"
    REJECTED = "rejected"
    CONTEXT_BUILD = "context_build"
    GENERATING = "generating"
    DELIVERED = "delivered"
    FAILED = "failed"


FAILURE_NOTICE = "Sorry, I couldn't come up with a reply just now. Please try again in a moment."
EMPTY_NOTICE = "Say something after the command and I'll answer."


@dataclass
class ChatOutcome:
    state: RequestState
    reply: str | None = None
    notice: str | None = None
    trail: list[RequestState] = field(default_factory=list)

    @property
    def delivered(self) -> bool:
        return self.state == RequestState.DELIVERED


class ChatOrchestrator:
    """
    One user request from receipt to reply.

    Conversation memory changes only after the model has answered; a
    rejected or failed request leaves it exactly as it was. Nothing is
    retried automatically.
    """

    def __init__(
        self,
        *,
        message_service,
        embedder,
        generator,
        memory: ConversationMemory,
        cooldown: CooldownTracker,
        persona: Persona | None = None,
        retrieval_limit: int = DEFAULT_RETRIEVAL_LIMIT,
        retrieval_window: int = DEFAULT_RETRIEVAL_WINDOW,
        prompt_max_chars: int = DEFAULT_PROMPT_MAX_CHARS,
        server_context_days: int = DEFAULT_SERVER_CONTEXT_DAYS,
        server_context_users: int = DEFAULT_SERVER_CONTEXT_USERS,
    ):
        self.message_service = message_service
        self.embedder = embedder
        self.generator = generator
        self.memory = memory
        self.cooldown = cooldown
        self.persona = persona or default_persona()
        self.retrieval_limit = int(retrieval_limit)
        self.retrieval_window = int(retrieval_window)
        self.prompt_max_chars = int(prompt_max_chars)
        self.server_context_days = int(server_context_days)
        self.server_context_users = int(server_context_users)

    async def _scope_context(self, scope: RetrievalScope, now: datetime) -> str:
        if scope.server_id is None:
            return ""
        since_ts = (now - timedelta(days=self.server_context_days)).timestamp()
        ctx = await self.message_service.get_server_context(
            scope.server_id,
            since_ts=since_ts,
            user_limit=self.server_context_users,
        )
        return format_server_context(ctx)

    async def build_prompt(
        self,
        conversation_key: str,
        scope: RetrievalScope,
        text: str,
        *,
        now: datetime | None = None,
    ) -> str:
        now = now or datetime.now(timezone.utc)
        retrieved = await retrieve_context(
            text,
            scope,
            message_service=self.message_service,
            embedder=self.embedder,
            limit=self.retrieval_limit,
            window=self.retrieval_window,
            now=now,
        )
        scope_context = await self._scope_context(scope, now)
        turns = self.memory.get(conversation_key)
        prompt = compose_prompt(
            build_system_preamble(self.persona, now=now),
            scope_context,
            retrieved,
            turns,
            text,
            self.prompt_max_chars,
        )
        print(
            f"[Chat] key={conversation_key} retrieved={len(retrieved)} turns={len(turns)} "
            f"prompt_chars={len(prompt)}"
        )
        return prompt

    async def handle_user_message(
        self,
        conversation_key: str,
        scope: RetrievalScope,
        author_id: int,
        text: str,
        *,
        now: datetime | None = None,
        clock: float | None = None,
        fresh: bool = False,
    ) -> ChatOutcome:
        outcome = ChatOutcome(state=RequestState.RECEIVED, trail=[RequestState.RECEIVED])

        def advance(state: RequestState) -> None:
            outcome.state = state
            outcome.trail.append(state)

        clean = (text or "").strip()
        if not clean:
            advance(RequestState.REJECTED)
            outcome.notice = EMPTY_NOTICE
            return outcome

        advance(RequestState.COOLDOWN_CHECK)
        accepted, left = self.cooldown.try_acquire(int(author_id), clock)
        if not accepted:
            advance(RequestState.REJECTED)
            outcome.notice = f"Slow down a little! Try again in {left:.0f}s."
            print(f"[Chat] cooldown user={author_id} remaining={left:.1f}s")
            return outcome

        if fresh:
            self.reset_conversation(conversation_key)

        advance(RequestState.CONTEXT_BUILD)
        try:
            prompt = await self.build_prompt(conversation_key, scope, clean, now=now)
        except StorageError as e:
            print(f"[Chat] context build failed key={conversation_key}: {e.code}: {e}")
            advance(RequestState.FAILED)
            outcome.notice = FAILURE_NOTICE
            return outcome

        advance(RequestState.GENERATING)
        result = await self.generator.generate(prompt)
        if not result.ok:
            kind = result.error.value if result.error else "unknown"
            print(f"[Chat] generation failed key={conversation_key} kind={kind} detail={result.detail}")
            advance(RequestState.FAILED)
            outcome.notice = FAILURE_NOTICE
            return outcome

        reply = result.unwrap()
        await self.memory.append_exchange(conversation_key, clean, reply)
        advance(RequestState.DELIVERED)
        outcome.reply = reply
        return outcome

    def reset_conversation(self, conversation_key: str) -> None:
        self.memory.reset(conversation_key)
        print(f"[Chat] history reset key={conversation_key}")
