"""SQLAlchemy ORM models for the Rememory tables.

Column types are dialect-neutral so the same models back Postgres in
production and SQLite in tests.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

PERSONA_STATUSES = ("active", "expired", "deleted")
MESSAGE_SENDERS = ("user", "ai", "system")
MESSAGE_KINDS = ("dialogue", "synthetic_trigger", "notice")
NOTIFICATION_TYPES = ("3day_reminder", "expired")


def utcnow() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored as UTC.

    SQLite drops tzinfo on the way out; values are normalised to UTC on
    bind and re-tagged as UTC on load so comparisons stay aware.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Single declarative base for all tables."""

    pass


class Persona(Base):
    __tablename__ = "personas"
    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'expired', 'deleted')",
            name="ck_personas_status",
        ),
        CheckConstraint(
            "guidance_level BETWEEN 0 AND 3",
            name="ck_personas_guidance_level",
        ),
        # One live persona per owner
        Index(
            "uq_personas_owner_live",
            "owner_id",
            unique=True,
            postgresql_where=text("status <> 'deleted'"),
            sqlite_where=text("status <> 'deleted'"),
        ),
        Index("ix_personas_status_expires_at", "status", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    relationship: Mapped[str] = mapped_column(String(120), nullable=False)
    user_nickname: Mapped[str | None] = mapped_column(String(120))
    biography: Mapped[str | None] = mapped_column(Text)
    speaking_style: Mapped[str | None] = mapped_column(Text)
    traits: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    key_memories: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    common_phrases: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    voice_sample_url: Mapped[str | None] = mapped_column(String(2048))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    guidance_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reminder_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    # Set together, once, by the session timer
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime)


class Conversation(Base):
    """Parent record of one persona's messages and summaries.

    No foreign key to personas: the cascade deletes the persona first and
    children afterwards, so a conversation may briefly outlive its persona.
    """

    __tablename__ = "conversations"

    persona_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint("sender IN ('user', 'ai', 'system')", name="ck_messages_sender"),
        CheckConstraint(
            "kind IN ('dialogue', 'synthetic_trigger', 'notice')",
            name="ck_messages_kind",
        ),
        Index("ix_messages_persona_timestamp", "persona_id", "timestamp", "id"),
    )

    # Autoincrement id doubles as the insertion-order tie breaker
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    persona_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("conversations.persona_id"), nullable=False
    )
    sender: Mapped[str] = mapped_column(String(10), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default="dialogue")
    text: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    meta: Mapped[dict | None] = mapped_column(JSON)


class Summary(Base):
    __tablename__ = "summaries"
    __table_args__ = (Index("ix_summaries_persona_created_at", "persona_id", "created_at", "id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    persona_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("conversations.persona_id"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        CheckConstraint("type IN ('3day_reminder', 'expired')", name="ck_notifications_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    persona_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    sent_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    delivered: Mapped[bool] = mapped_column(Boolean, nullable=False)


class DeletionRequest(Base):
    """Audit trail of confirmed persona deletions."""

    __tablename__ = "deletion_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    persona_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    confirmation_text: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="persona")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
