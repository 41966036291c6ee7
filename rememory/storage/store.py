"""PersonaStore: persistence operations over personas and their conversations.

Policy lives in the lifecycle and conversation layers. This module only
knows how to read and write rows, and how to make the one-time transitions
safe with conditional UPDATE ... RETURNING statements (only one caller wins).

Methods that take an optional ``session`` join the caller's transaction;
otherwise they open and commit their own.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rememory.storage.database import Database
from rememory.storage.models import (
    Conversation,
    DeletionRequest,
    Message,
    Notification,
    Persona,
    Summary,
    utcnow,
)


class PersonaStore:
    """Row-level access to the Rememory tables."""

    def __init__(self, database: Database) -> None:
        self._db = database

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Session whose work commits on exit and rolls back on error."""
        async with self._db.session() as session:
            async with session.begin():
                yield session

    async def server_now(self, session: AsyncSession) -> datetime:
        """Current time on the database clock, as an aware UTC datetime.

        Message timestamps come from here so rows written by several workers
        share one clock.
        """
        if self._db.engine.dialect.name == "sqlite":
            expr = func.strftime("%Y-%m-%d %H:%M:%f", "now")
        else:
            expr = func.now()
        value = (await session.execute(select(expr))).scalar_one()
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    # ------------------------------------------------------------------
    # Personas
    # ------------------------------------------------------------------

    async def get_persona(
        self, persona_id: UUID, session: AsyncSession | None = None
    ) -> Persona | None:
        if session is not None:
            return await session.get(Persona, persona_id, populate_existing=True)
        async with self._db.session() as s:
            return await s.get(Persona, persona_id)

    async def get_live_persona_by_owner(self, owner_id: str) -> Persona | None:
        """The owner's persona whose status is not ``deleted``, if any."""
        async with self._db.session() as session:
            result = await session.execute(
                select(Persona)
                .where(Persona.owner_id == owner_id)
                .where(Persona.status != "deleted")
                .order_by(Persona.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def insert_persona(self, owner_id: str, fields: dict[str, Any]) -> Persona:
        """Insert a persona and its conversation row in one transaction.

        Raises sqlalchemy IntegrityError when the owner already has a live
        persona (unique partial index).
        """
        async with self._db.session() as session:
            persona = Persona(
                owner_id=owner_id,
                status="active",
                guidance_level=0,
                reminder_sent=False,
                created_at=utcnow(),
                **fields,
            )
            session.add(persona)
            await session.flush()
            session.add(Conversation(persona_id=persona.id, created_at=persona.created_at))
            await session.commit()
            return persona

    async def update_persona_fields(
        self, persona_id: UUID, owner_id: str, fields: dict[str, Any]
    ) -> bool:
        """Merge mutable fields into an owned, live persona. False if no row matched."""
        async with self._db.session() as session:
            result = await session.execute(
                update(Persona)
                .where(Persona.id == persona_id)
                .where(Persona.owner_id == owner_id)
                .where(Persona.status != "deleted")
                .values(**fields)
                .returning(Persona.id)
            )
            updated = result.scalar_one_or_none() is not None
            await session.commit()
            return updated

    async def claim_timer(
        self,
        persona_id: UUID,
        started_at: datetime,
        expires_at: datetime,
        session: AsyncSession,
    ) -> bool:
        """Set started_at/expires_at unless already set. True if this caller won."""
        result = await session.execute(
            update(Persona)
            .where(Persona.id == persona_id)
            .where(Persona.started_at.is_(None))
            .values(
                started_at=started_at,
                expires_at=expires_at,
                status="active",
                guidance_level=0,
            )
            .returning(Persona.id)
        )
        return result.scalar_one_or_none() is not None

    async def set_guidance_level(
        self,
        persona_id: UUID,
        expected_level: int,
        new_level: int,
        notice: str | None = None,
    ) -> bool:
        """Compare-and-set the guidance level, appending ``notice`` as a system
        message in the same transaction. Returns False if the stored level had
        already moved on (another request got there first).
        """
        async with self.transaction() as session:
            result = await session.execute(
                update(Persona)
                .where(Persona.id == persona_id)
                .where(Persona.guidance_level == expected_level)
                .values(guidance_level=new_level)
                .returning(Persona.id)
            )
            if result.scalar_one_or_none() is None:
                return False
            if notice:
                session.add(
                    Message(
                        persona_id=persona_id,
                        sender="system",
                        kind="notice",
                        text=notice,
                        timestamp=await self.server_now(session),
                    )
                )
            return True

    async def mark_expired(self, persona_id: UUID) -> bool:
        """Flip an active persona to expired. True only for the caller that flipped it."""
        async with self._db.session() as session:
            result = await session.execute(
                update(Persona)
                .where(Persona.id == persona_id)
                .where(Persona.status == "active")
                .values(status="expired")
                .returning(Persona.id)
            )
            flipped = result.scalar_one_or_none() is not None
            await session.commit()
            return flipped

    async def claim_reminder(self, persona_id: UUID) -> bool:
        """Set reminder_sent on an active persona. True only for the first caller."""
        async with self._db.session() as session:
            result = await session.execute(
                update(Persona)
                .where(Persona.id == persona_id)
                .where(Persona.status == "active")
                .where(Persona.reminder_sent.is_(False))
                .values(reminder_sent=True)
                .returning(Persona.id)
            )
            claimed = result.scalar_one_or_none() is not None
            await session.commit()
            return claimed

    async def personas_due_for_sweep(self, horizon: datetime) -> list[Persona]:
        """Active personas whose expiry falls on or before ``horizon``."""
        async with self._db.session() as session:
            result = await session.execute(
                select(Persona)
                .where(Persona.status == "active")
                .where(Persona.expires_at.is_not(None))
                .where(Persona.expires_at <= horizon)
                .order_by(Persona.expires_at)
            )
            return list(result.scalars().all())

    async def delete_persona_row(self, persona_id: UUID) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                delete(Persona).where(Persona.id == persona_id).returning(Persona.id)
            )
            deleted = result.scalar_one_or_none() is not None
            await session.commit()
            return deleted

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def append_messages(
        self, persona_id: UUID, messages: list[dict[str, Any]]
    ) -> list[Message]:
        """Insert messages as one batch, in list order. All or nothing.

        Messages without an explicit timestamp share the database clock's
        current time.
        """
        async with self.transaction() as session:
            now = await self.server_now(session)
            rows = [
                Message(
                    persona_id=persona_id,
                    sender=m["sender"],
                    kind=m.get("kind", "dialogue"),
                    text=m["text"],
                    timestamp=m.get("timestamp", now),
                    meta=m.get("meta"),
                )
                for m in messages
            ]
            # One row per flush keeps autoincrement ids in list order
            for row in rows:
                session.add(row)
                await session.flush()
        return rows

    async def tail_messages(
        self,
        persona_id: UUID,
        limit: int,
        exclude_kinds: tuple[str, ...] = (),
    ) -> list[Message]:
        """The newest ``limit`` messages, returned oldest first."""
        async with self._db.session() as session:
            q = (
                select(Message)
                .where(Message.persona_id == persona_id)
                .order_by(Message.timestamp.desc(), Message.id.desc())
                .limit(limit)
            )
            if exclude_kinds:
                q = q.where(Message.kind.not_in(exclude_kinds))
            result = await session.execute(q)
            rows = list(result.scalars().all())
        rows.reverse()
        return rows

    async def oldest_messages(self, persona_id: UUID, limit: int) -> list[Message]:
        async with self._db.session() as session:
            result = await session.execute(
                select(Message)
                .where(Message.persona_id == persona_id)
                .order_by(Message.timestamp, Message.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def count_messages(self, persona_id: UUID) -> int:
        async with self._db.session() as session:
            result = await session.execute(
                select(func.count()).select_from(Message).where(Message.persona_id == persona_id)
            )
            return result.scalar_one()

    async def delete_messages(self, message_ids: list[int], batch_size: int = 500) -> int:
        """Delete messages by id, committing one batch at a time."""
        deleted = 0
        for start in range(0, len(message_ids), batch_size):
            chunk = message_ids[start : start + batch_size]
            async with self._db.session() as session:
                result = await session.execute(delete(Message).where(Message.id.in_(chunk)))
                await session.commit()
                deleted += result.rowcount
        return deleted

    async def delete_all_messages(self, persona_id: UUID, batch_size: int = 500) -> int:
        """Delete every message of a conversation in batches."""
        deleted = 0
        while True:
            async with self._db.session() as session:
                result = await session.execute(
                    select(Message.id).where(Message.persona_id == persona_id).limit(batch_size)
                )
                ids = list(result.scalars().all())
                if not ids:
                    return deleted
                await session.execute(delete(Message).where(Message.id.in_(ids)))
                await session.commit()
                deleted += len(ids)

    # ------------------------------------------------------------------
    # Summaries and conversations
    # ------------------------------------------------------------------

    async def latest_summary(self, persona_id: UUID) -> Summary | None:
        async with self._db.session() as session:
            result = await session.execute(
                select(Summary)
                .where(Summary.persona_id == persona_id)
                .order_by(Summary.created_at.desc(), Summary.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def insert_summary(self, persona_id: UUID, content: str) -> Summary:
        async with self._db.session() as session:
            summary = Summary(persona_id=persona_id, content=content, created_at=utcnow())
            session.add(summary)
            await session.commit()
            return summary

    async def delete_summaries(self, persona_id: UUID) -> int:
        async with self._db.session() as session:
            result = await session.execute(delete(Summary).where(Summary.persona_id == persona_id))
            await session.commit()
            return result.rowcount

    async def delete_conversation(self, persona_id: UUID) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                delete(Conversation)
                .where(Conversation.persona_id == persona_id)
                .returning(Conversation.persona_id)
            )
            deleted = result.scalar_one_or_none() is not None
            await session.commit()
            return deleted

    async def orphaned_conversations(self, limit: int = 100) -> list[UUID]:
        """Conversations whose persona row no longer exists."""
        async with self._db.session() as session:
            result = await session.execute(
                select(Conversation.persona_id)
                .where(~select(Persona.id).where(Persona.id == Conversation.persona_id).exists())
                .limit(limit)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Audit records
    # ------------------------------------------------------------------

    async def record_notification(
        self, user_id: str, persona_id: UUID, notification_type: str, delivered: bool
    ) -> Notification:
        async with self._db.session() as session:
            row = Notification(
                user_id=user_id,
                persona_id=persona_id,
                type=notification_type,
                sent_at=utcnow(),
                delivered=delivered,
            )
            session.add(row)
            await session.commit()
            return row

    async def record_deletion_request(
        self, user_id: str, persona_id: UUID, confirmation_text: str
    ) -> DeletionRequest:
        async with self._db.session() as session:
            row = DeletionRequest(
                user_id=user_id,
                persona_id=persona_id,
                confirmation_text=confirmation_text,
                type="persona",
                created_at=utcnow(),
            )
            session.add(row)
            await session.commit()
            return row
