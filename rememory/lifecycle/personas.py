"""PersonaManager: create, read, update and cascade-delete personas.

One live persona per owner is enforced by a unique partial index, so the
create check-then-insert race surfaces as PersonaAlreadyExists instead of
a second row. The delete cascade is best-effort: children left behind by a
crash are reclaimed by reclaim_orphans(), which the sweep runs each cycle.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from rememory.config import Settings
from rememory.errors import (
    ConfirmationMismatch,
    IdentityLocked,
    PersonaAlreadyExists,
    PersonaNotFound,
    ValidationFailed,
)
from rememory.lifecycle.schemas import (
    IDENTITY_FIELDS,
    PersonaCreate,
    PersonaUpdate,
    validation_details,
)
from rememory.storage.models import Persona
from rememory.storage.store import PersonaStore

logger = logging.getLogger(__name__)

CONFIRMATION_PHRASE = "I understand this will permanently delete my persona and messages."


class PersonaManager:
    def __init__(self, store: PersonaStore, settings: Settings) -> None:
        self._store = store
        self._settings = settings

    async def create_persona(self, owner_id: str, profile: dict[str, Any] | PersonaCreate) -> Persona:
        """Create the owner's persona. Raises PersonaAlreadyExists if one is live."""
        data = self._validate(PersonaCreate, profile)

        if await self._store.get_live_persona_by_owner(owner_id) is not None:
            raise PersonaAlreadyExists()
        try:
            persona = await self._store.insert_persona(owner_id, data.to_fields())
        except IntegrityError:
            # Lost the race against a concurrent create for the same owner
            raise PersonaAlreadyExists() from None

        logger.info("Created persona %s for owner %s", persona.id, owner_id)
        return persona

    async def get_persona_by_owner(self, owner_id: str) -> Persona | None:
        return await self._store.get_live_persona_by_owner(owner_id)

    async def get_owned(self, persona_id: UUID, owner_id: str) -> Persona:
        """Load a live persona owned by ``owner_id`` or raise PersonaNotFound."""
        persona = await self._store.get_persona(persona_id)
        if persona is None or persona.owner_id != owner_id or persona.status == "deleted":
            raise PersonaNotFound()
        return persona

    async def update_persona(
        self, persona_id: UUID, owner_id: str, updates: dict[str, Any]
    ) -> Persona:
        """Merge mutable profile fields.

        Any payload naming an identity field is rejected with IdentityLocked,
        whatever else it carries.
        """
        locked = [f for f in IDENTITY_FIELDS if f in updates]
        if locked:
            raise IdentityLocked(locked)
        if not updates:
            raise ValidationFailed("No fields to update")

        data = self._validate(PersonaUpdate, updates)
        fields = data.to_fields()
        if not fields:
            raise ValidationFailed("No fields to update")

        if not await self._store.update_persona_fields(persona_id, owner_id, fields):
            raise PersonaNotFound()
        logger.info("Updated persona %s fields: %s", persona_id, sorted(fields))
        return await self.get_owned(persona_id, owner_id)

    async def delete_persona_cascade(
        self, persona_id: UUID, owner_id: str, confirmation: str
    ) -> None:
        """Delete a persona, then its messages, summaries and conversation.

        Requires the exact confirmation phrase. The steps after the persona
        row are not atomic; a failure there is logged and left for
        reclaim_orphans().
        """
        if confirmation != CONFIRMATION_PHRASE:
            raise ConfirmationMismatch()
        await self.get_owned(persona_id, owner_id)

        await self._store.record_deletion_request(owner_id, persona_id, confirmation)
        if not await self._store.delete_persona_row(persona_id):
            raise PersonaNotFound()
        logger.info("Deleted persona %s for owner %s", persona_id, owner_id)

        try:
            removed = await self._purge_conversation(persona_id)
        except Exception:
            logger.exception(
                "Cascade delete for persona %s stopped after the persona row; "
                "orphaned conversation left for cleanup",
                persona_id,
            )
            return
        logger.info("Removed %d messages of persona %s", removed, persona_id)

    async def reclaim_orphans(self, limit: int = 100) -> int:
        """Remove conversations whose persona no longer exists.

        Returns the number of conversations reclaimed. Per-conversation
        failures are logged and skipped.
        """
        reclaimed = 0
        for persona_id in await self._store.orphaned_conversations(limit):
            try:
                await self._purge_conversation(persona_id)
                reclaimed += 1
            except Exception:
                logger.exception("Failed to reclaim orphaned conversation %s", persona_id)
        if reclaimed:
            logger.info("Reclaimed %d orphaned conversation(s)", reclaimed)
        return reclaimed

    async def _purge_conversation(self, persona_id: UUID) -> int:
        removed = await self._store.delete_all_messages(
            persona_id, batch_size=self._settings.delete_batch_size
        )
        await self._store.delete_summaries(persona_id)
        await self._store.delete_conversation(persona_id)
        return removed

    @staticmethod
    def _validate(model, payload):
        if isinstance(payload, model):
            return payload
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise ValidationFailed("Invalid persona profile", validation_details(e)) from None
