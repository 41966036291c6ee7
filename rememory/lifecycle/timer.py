"""Session timer: the one-time start of a persona's 30-day window.

The read and the conditional write share one transaction, and the write
is guarded by ``started_at IS NULL``, so two concurrent first messages
cannot both set an expiry.
"""

from __future__ import annotations

import logging
import math
from datetime import UTC, datetime, timedelta
from uuid import UUID

from rememory.config import Settings
from rememory.errors import PersonaNotFound
from rememory.storage.store import PersonaStore

logger = logging.getLogger(__name__)

MS_PER_DAY = 86_400_000


def compute_remaining_ms(expires_at: datetime | None, now: datetime | None = None) -> int | None:
    """Milliseconds until expiry, clamped at zero. None when no expiry is set."""
    if expires_at is None:
        return None
    now = now or datetime.now(UTC)
    delta_ms = int((expires_at - now).total_seconds() * 1000)
    return max(0, delta_ms)


def remaining_days(remaining_ms: int | None) -> int | None:
    if remaining_ms is None:
        return None
    return math.ceil(remaining_ms / MS_PER_DAY)


class SessionTimer:
    def __init__(self, store: PersonaStore, settings: Settings) -> None:
        self._store = store
        self._settings = settings

    async def start_session_if_needed(self, persona_id: UUID) -> bool:
        """Start the persona's session unless already started.

        Returns True if this call set the timer, False if it was a no-op.
        Raises PersonaNotFound if the persona no longer exists.
        """
        async with self._store.transaction() as session:
            persona = await self._store.get_persona(persona_id, session=session)
            if persona is None:
                raise PersonaNotFound()
            if persona.started_at is not None:
                return False

            now = datetime.now(UTC)
            expires_at = now + timedelta(days=self._settings.session_days)
            started = await self._store.claim_timer(persona_id, now, expires_at, session=session)

        if started:
            logger.info(
                "Session started for persona %s (expires %s)",
                persona_id,
                expires_at.isoformat(),
            )
        return started
