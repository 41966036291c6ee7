"""Pydantic DTOs for persona profiles and chat requests.

Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator
from pydantic.alias_generators import to_camel

PersonaStatus = Literal["active", "expired", "deleted"]
MessageKind = Literal["dialogue", "synthetic_trigger"]

MAX_TRAITS = 8
MAX_KEY_MEMORIES = 10
MAX_COMMON_PHRASES = 10
MAX_ITEM_LENGTH = 500

IDENTITY_FIELDS = ("name", "relationship")


def _clean_list(values: list[str], limit: int, label: str) -> list[str]:
    cleaned = [v.strip() for v in values if v and v.strip()]
    if len(cleaned) > limit:
        raise ValueError(f"{label} accepts at most {limit} entries")
    for v in cleaned:
        if len(v) > MAX_ITEM_LENGTH:
            raise ValueError(f"{label} entries must be at most {MAX_ITEM_LENGTH} characters")
    return cleaned


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="forbid",
    )


class _ProfileFields(_WireModel):
    user_nickname: str | None = Field(default=None, max_length=120)
    biography: str | None = Field(default=None, max_length=4000)
    speaking_style: str | None = Field(default=None, max_length=2000)
    traits: list[str] | None = None
    key_memories: list[str] | None = None
    common_phrases: list[str] | None = None
    voice_sample_url: HttpUrl | None = None

    @field_validator("traits")
    @classmethod
    def _check_traits(cls, v: list[str] | None) -> list[str] | None:
        return None if v is None else _clean_list(v, MAX_TRAITS, "traits")

    @field_validator("key_memories")
    @classmethod
    def _check_key_memories(cls, v: list[str] | None) -> list[str] | None:
        return None if v is None else _clean_list(v, MAX_KEY_MEMORIES, "keyMemories")

    @field_validator("common_phrases")
    @classmethod
    def _check_common_phrases(cls, v: list[str] | None) -> list[str] | None:
        return None if v is None else _clean_list(v, MAX_COMMON_PHRASES, "commonPhrases")

    def profile_fields(self, *, only_set: bool) -> dict[str, Any]:
        """Column values ready for the store."""
        data = self.model_dump(exclude_unset=only_set)
        if data.get("voice_sample_url") is not None:
            data["voice_sample_url"] = str(data["voice_sample_url"])
        return data


class PersonaCreate(_ProfileFields):
    """Profile submitted when a persona is created."""

    name: str = Field(min_length=1, max_length=120)
    relationship: str = Field(min_length=1, max_length=120)

    def to_fields(self) -> dict[str, Any]:
        data = self.profile_fields(only_set=False)
        for key in ("traits", "key_memories", "common_phrases"):
            if data[key] is None:
                data[key] = []
        return data


class PersonaUpdate(_ProfileFields):
    """Partial update of the mutable profile fields.

    ``name`` and ``relationship`` are rejected before this model is built.
    """

    def to_fields(self) -> dict[str, Any]:
        data = self.profile_fields(only_set=True)
        for key in ("traits", "key_memories", "common_phrases"):
            if key in data and data[key] is None:
                data[key] = []
        return data


class ChatRequest(_WireModel):
    text: str = Field(min_length=1, max_length=1000)
    client_message_id: UUID
    kind: MessageKind = "dialogue"


class DeleteRequest(_WireModel):
    confirmation: str


class MessageView(_WireModel):
    id: str
    sender: str
    kind: str
    text: str
    timestamp: datetime
    meta: dict[str, Any] | None = None


class PersonaView(_WireModel):
    id: UUID
    owner_id: str
    name: str
    relationship: str
    user_nickname: str | None
    biography: str | None
    speaking_style: str | None
    traits: list[str]
    key_memories: list[str]
    common_phrases: list[str]
    voice_sample_url: str | None
    status: PersonaStatus
    created_at: datetime
    started_at: datetime | None
    expires_at: datetime | None
    guidance_level: int
    reminder_sent: bool
    remaining_ms: int | None
    remaining_days: int | None


def validation_details(exc: Any) -> list[dict[str, Any]]:
    """Flatten a pydantic ValidationError into JSON-safe detail dicts."""
    return [
        {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]
