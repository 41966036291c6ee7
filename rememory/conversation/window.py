"""Prompt window selection over a persona's message log."""

from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID

from rememory.api.models import HistoryTurn
from rememory.config import Settings
from rememory.storage.store import PersonaStore

# Messages of these kinds never reach the model as dialogue
HIDDEN_KINDS = ("synthetic_trigger",)

_ROLE_BY_SENDER = {"user": "user", "ai": "model"}


@dataclass
class PromptWindow:
    history: list[HistoryTurn] = field(default_factory=list)
    summary: str | None = None


class ConversationWindow:
    def __init__(self, store: PersonaStore, settings: Settings) -> None:
        self._store = store
        self._settings = settings

    async def select_prompt_window(self, persona_id: UUID) -> PromptWindow:
        """The trailing N dialogue messages, oldest first, plus the latest summary.

        System messages count toward the window but are dropped from the
        role-mapped history; they are context, not dialogue.
        """
        messages = await self._store.tail_messages(
            persona_id,
            self._settings.prompt_window_size,
            exclude_kinds=HIDDEN_KINDS,
        )
        history = [
            HistoryTurn(role=_ROLE_BY_SENDER[m.sender], content=m.text)
            for m in messages
            if m.sender in _ROLE_BY_SENDER
        ]
        summary = await self._store.latest_summary(persona_id)
        return PromptWindow(history=history, summary=summary.content if summary else None)
