"""Test fixtures backed by an in-memory SQLite database.

Each test gets a fresh schema; store-level behaviour is the same on
Postgres apart from row locking.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from rememory.api.models import Completion, HistoryTurn
from rememory.config import Settings
from rememory.conversation.compaction import ConversationCompactor
from rememory.conversation.orchestrator import TurnOrchestrator
from rememory.conversation.window import ConversationWindow
from rememory.errors import UpstreamUnavailable
from rememory.lifecycle.guidance import GuidanceEscalator
from rememory.lifecycle.personas import PersonaManager
from rememory.lifecycle.timer import SessionTimer
from rememory.storage.database import Database
from rememory.storage.models import Notification, Persona, Summary
from rememory.storage.store import PersonaStore

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeCompletionClient:
    """Returns scripted replies and records every call."""

    def __init__(self, reply: str = "I'm here with you.") -> None:
        self.reply = reply
        self.fail = False
        self.calls: list[dict] = []

    async def complete(
        self,
        system_prompt: str,
        history: list[HistoryTurn],
        user_message: str,
        *,
        temperature: float,
        max_tokens: int,
        timeout: float | None = None,
    ) -> Completion:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "history": list(history),
                "user_message": user_message,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "timeout": timeout,
            }
        )
        if self.fail:
            raise UpstreamUnavailable("scripted failure")
        return Completion(text=self.reply, model="fake-model", usage={"total_tokens": 42})

    async def close(self) -> None:
        pass


class RecordingNotifier:
    """Records notify() calls instead of sending email."""

    def __init__(self, delivered: bool = True) -> None:
        self.delivered = delivered
        self.calls: list[tuple[str, UUID, str, str]] = []

    async def notify(self, owner_id, persona_id, notification_type, persona_name) -> bool:
        self.calls.append((owner_id, persona_id, notification_type, persona_name))
        return self.delivered

    async def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        llm_api_key="test-key",
        dev_static_bearer="",
        compaction_inline=True,
        compaction_retry_backoff=0.0,
        sweep_enabled=False,
        _env_file=None,
    )


@pytest_asyncio.fixture
async def db(settings):
    database = Database(settings)
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def store(db) -> PersonaStore:
    return PersonaStore(db)


@pytest.fixture
def completion() -> FakeCompletionClient:
    return FakeCompletionClient()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def personas(store, settings) -> PersonaManager:
    return PersonaManager(store, settings)


@pytest.fixture
def timer(store, settings) -> SessionTimer:
    return SessionTimer(store, settings)


@pytest.fixture
def escalator(store) -> GuidanceEscalator:
    return GuidanceEscalator(store)


@pytest.fixture
def window(store, settings) -> ConversationWindow:
    return ConversationWindow(store, settings)


@pytest.fixture
def compactor(store, completion, settings) -> ConversationCompactor:
    return ConversationCompactor(store, completion, settings)


@pytest.fixture
def orchestrator(
    store, personas, timer, escalator, window, compactor, completion, settings, notifier
) -> TurnOrchestrator:
    return TurnOrchestrator(
        store=store,
        personas=personas,
        timer=timer,
        escalator=escalator,
        window=window,
        compactor=compactor,
        completion=completion,
        settings=settings,
        notifier=notifier,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


PROFILE = {
    "name": "Alex",
    "relationship": "Sibling",
    "traits": ["warm", "funny"],
    "keyMemories": ["the lake house summers"],
    "commonPhrases": ["you got this"],
}


@pytest_asyncio.fixture
async def persona(personas) -> Persona:
    return await personas.create_persona("owner-1", dict(PROFILE))


async def set_expiry(db: Database, persona_id: UUID, expires_at: datetime | None, **fields) -> None:
    """Force a persona's timer fields for time-dependent tests."""
    async with db.session() as session:
        row = await session.get(Persona, persona_id)
        row.expires_at = expires_at
        row.started_at = (expires_at - timedelta(days=30)) if expires_at else None
        for key, value in fields.items():
            setattr(row, key, value)
        await session.commit()


def days_from_now(days: float) -> datetime:
    return datetime.now(UTC) + timedelta(days=days)


async def list_notifications(db: Database, persona_id: UUID) -> list[Notification]:
    """Notification audit rows for a persona, oldest first."""
    async with db.session() as session:
        result = await session.execute(
            select(Notification)
            .where(Notification.persona_id == persona_id)
            .order_by(Notification.sent_at)
        )
        return list(result.scalars().all())


async def count_summaries(db: Database, persona_id: UUID) -> int:
    async with db.session() as session:
        result = await session.execute(
            select(func.count()).select_from(Summary).where(Summary.persona_id == persona_id)
        )
        return result.scalar_one()
