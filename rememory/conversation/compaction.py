"""Conversation compaction: summarize the oldest messages, then prune them.

Once a conversation grows past ``compaction_threshold`` messages, the oldest
``compaction_batch_size`` are distilled into a Summary and the oldest
``compaction_prune_count`` of those are deleted. Pruning fewer than were
summarized leaves an overlap, so an interrupted run loses nothing.

Compaction is fail-open: if the summary call fails, nothing is deleted and
the conversation keeps growing until the next attempt.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol
from uuid import UUID

from rememory.api.models import Completion, HistoryTurn
from rememory.config import Settings
from rememory.conversation.prompts import (
    SUMMARY_SYSTEM_PROMPT,
    SUMMARY_USER_PROMPT,
    render_transcript,
)
from rememory.errors import RememoryError
from rememory.storage.store import PersonaStore

logger = logging.getLogger(__name__)


class CompletionBackend(Protocol):
    async def complete(
        self,
        system_prompt: str,
        history: list[HistoryTurn],
        user_message: str,
        *,
        temperature: float,
        max_tokens: int,
        timeout: float | None = None,
    ) -> Completion: ...


class ConversationCompactor:
    """Bounds conversation size by folding old messages into summaries."""

    def __init__(
        self,
        store: PersonaStore,
        completion: CompletionBackend,
        settings: Settings,
    ) -> None:
        self._store = store
        self._completion = completion
        self._settings = settings
        self._tasks: dict[UUID, asyncio.Task] = {}

    async def compact_if_needed(self, persona_id: UUID) -> bool:
        """Compact once if the log is over the threshold.

        Returns True if a summary was written. Never raises for a failed
        summary call; the failure is logged and nothing is deleted.
        """
        settings = self._settings
        count = await self._store.count_messages(persona_id)
        if count <= settings.compaction_threshold:
            return False

        batch = await self._store.oldest_messages(persona_id, settings.compaction_batch_size)
        if not batch:
            return False
        transcript = render_transcript(batch)

        try:
            completion = await self._completion.complete(
                SUMMARY_SYSTEM_PROMPT,
                [],
                SUMMARY_USER_PROMPT.format(transcript=transcript),
                temperature=settings.summary_temperature,
                max_tokens=settings.summary_max_tokens,
            )
        except RememoryError as e:
            logger.warning(
                "Compaction summary failed for persona %s, keeping %d messages: %s",
                persona_id,
                count,
                e.message,
            )
            return False

        await self._store.insert_summary(persona_id, completion.text)
        prune_ids = [m.id for m in batch[: settings.compaction_prune_count]]
        deleted = await self._store.delete_messages(
            prune_ids, batch_size=settings.delete_batch_size
        )
        logger.info(
            "Compacted persona %s: summarized %d, pruned %d of %d messages",
            persona_id,
            len(batch),
            deleted,
            count,
        )
        return True

    def schedule(self, persona_id: UUID) -> asyncio.Task | None:
        """Run compaction in the background with retry and backoff.

        At most one background compaction per persona; returns None when one
        is already in flight.
        """
        existing = self._tasks.get(persona_id)
        if existing is not None and not existing.done():
            return None
        task = asyncio.create_task(
            self._run_with_retry(persona_id), name=f"compaction-{persona_id}"
        )
        self._tasks[persona_id] = task
        task.add_done_callback(lambda t: self._discard(persona_id, t))
        return task

    def _discard(self, persona_id: UUID, task: asyncio.Task) -> None:
        if self._tasks.get(persona_id) is task:
            del self._tasks[persona_id]

    async def drain(self) -> None:
        """Wait for in-flight background compactions (used at shutdown)."""
        tasks = list(self._tasks.values())
        if tasks:
            logger.info("Waiting for %d background compaction(s)", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run_with_retry(self, persona_id: UUID) -> bool:
        delay = self._settings.compaction_retry_backoff
        attempts = self._settings.compaction_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                if await self.compact_if_needed(persona_id):
                    return True
                if await self._store.count_messages(persona_id) <= self._settings.compaction_threshold:
                    return False
            except Exception:
                logger.exception(
                    "Compaction attempt %d/%d failed for persona %s",
                    attempt,
                    attempts,
                    persona_id,
                )
            if attempt < attempts:
                await asyncio.sleep(delay)
                delay *= 2
        logger.warning("Giving up compaction for persona %s after %d attempts", persona_id, attempts)
        return False
