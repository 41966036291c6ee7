"""TurnOrchestrator: the per-message state machine for persona chat.

A turn resolves the persona, starts its timer, builds the prompt window,
calls the completion API, persists the user and AI messages together,
escalates guidance and triggers compaction. Steps run sequentially because
each depends on the one before. Nothing is written until the completion
call has succeeded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol
from uuid import UUID

from rememory.config import Settings
from rememory.conversation.compaction import CompletionBackend, ConversationCompactor
from rememory.conversation.prompts import build_system_prompt
from rememory.conversation.window import ConversationWindow
from rememory.errors import PersonaExpired
from rememory.lifecycle.guidance import GuidanceEscalator
from rememory.lifecycle.personas import PersonaManager
from rememory.lifecycle.timer import SessionTimer, compute_remaining_ms
from rememory.storage.models import Message, Persona
from rememory.storage.store import PersonaStore

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(
        self, owner_id: str, persona_id: UUID, notification_type: str, persona_name: str
    ) -> bool: ...


@dataclass
class TurnOutcome:
    messages: list[Message] = field(default_factory=list)
    persona_status: str = "active"
    remaining_ms: int | None = None
    guidance_level: int = 0
    summary_appended: bool = False


class TurnOrchestrator:
    def __init__(
        self,
        store: PersonaStore,
        personas: PersonaManager,
        timer: SessionTimer,
        escalator: GuidanceEscalator,
        window: ConversationWindow,
        compactor: ConversationCompactor,
        completion: CompletionBackend,
        settings: Settings,
        notifier: Notifier | None = None,
    ) -> None:
        self._store = store
        self._personas = personas
        self._timer = timer
        self._escalator = escalator
        self._window = window
        self._compactor = compactor
        self._completion = completion
        self._settings = settings
        self._notifier = notifier

    async def handle_turn(
        self,
        persona_id: UUID,
        owner_id: str,
        user_text: str,
        *,
        kind: str = "dialogue",
        client_message_id: UUID | None = None,
    ) -> TurnOutcome:
        """Run one conversational turn.

        Raises PersonaNotFound, PersonaExpired or UpstreamUnavailable. On any
        of these no message has been written.
        """
        persona = await self._personas.get_owned(persona_id, owner_id)
        await self._ensure_not_expired(persona)

        await self._timer.start_session_if_needed(persona_id)
        # The timer may have just set expires_at
        persona = await self._personas.get_owned(persona_id, owner_id)
        await self._ensure_not_expired(persona)

        prompt_window = await self._window.select_prompt_window(persona_id)
        system_prompt = build_system_prompt(persona, prompt_window.summary)
        completion = await self._completion.complete(
            system_prompt,
            prompt_window.history,
            user_text,
            temperature=self._settings.chat_temperature,
            max_tokens=self._settings.chat_max_tokens,
            timeout=float(self._settings.api_timeout_read),
        )

        now = datetime.now(UTC)
        user_meta = {"clientCreated": now.isoformat()}
        if client_message_id is not None:
            user_meta["clientMessageId"] = str(client_message_id)
        messages = await self._store.append_messages(
            persona_id,
            [
                {"sender": "user", "kind": kind, "text": user_text, "meta": user_meta},
                {
                    "sender": "ai",
                    "text": completion.text,
                    "meta": {"llmModel": completion.model, "llmTokens": completion.total_tokens},
                },
            ],
        )

        escalation = await self._escalator.apply(persona, now=now)
        summary_appended = await self._compact(persona_id)

        return TurnOutcome(
            messages=messages,
            persona_status=persona.status,
            remaining_ms=compute_remaining_ms(persona.expires_at),
            guidance_level=escalation.level,
            summary_appended=summary_appended,
        )

    async def _ensure_not_expired(self, persona: Persona) -> None:
        """Raise PersonaExpired if the persona's session is over.

        An active persona past its expiry is flipped here rather than waiting
        for the sweep. Only the caller that wins the flip notifies.
        """
        if persona.status == "expired":
            raise PersonaExpired()
        if persona.expires_at is None or persona.expires_at > datetime.now(UTC):
            return

        if await self._store.mark_expired(persona.id):
            logger.info("Persona %s expired at read time", persona.id)
            if self._notifier is not None:
                await self._notifier.notify(persona.owner_id, persona.id, "expired", persona.name)
        raise PersonaExpired()

    async def _compact(self, persona_id: UUID) -> bool:
        if not self._settings.compaction_inline:
            self._compactor.schedule(persona_id)
            return False
        try:
            return await self._compactor.compact_if_needed(persona_id)
        except Exception:
            logger.exception("Inline compaction failed for persona %s", persona_id)
            return False
