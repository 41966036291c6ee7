"""Guidance escalation as a persona's session nears its end.

The level is a pure function of time remaining. Escalating into the
closure zone (level 2 or above) appends one system notice per upward
crossing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from rememory.conversation.prompts import CLOSURE_NOTICE
from rememory.storage.models import Persona
from rememory.storage.store import PersonaStore

logger = logging.getLogger(__name__)

CLOSURE_LEVEL = 2

# (max days remaining, level), checked in order
_BRACKETS = ((1.0, 3), (7.0, 2), (14.0, 1))


def derive_guidance_level(expires_at: datetime | None, now: datetime | None = None) -> int:
    """Map days remaining to a guidance level 0-3.

    Boundary values resolve to the more urgent bracket (d == 7 -> 2).
    """
    if expires_at is None:
        return 0
    now = now or datetime.now(UTC)
    days = (expires_at - now).total_seconds() / 86_400
    for limit, level in _BRACKETS:
        if days <= limit:
            return level
    return 0


@dataclass
class EscalationResult:
    level: int
    changed: bool = False
    notice_appended: bool = False


class GuidanceEscalator:
    def __init__(self, store: PersonaStore) -> None:
        self._store = store

    async def apply(self, persona: Persona, now: datetime | None = None) -> EscalationResult:
        """Recompute and persist the persona's guidance level.

        The write is a compare-and-set on the stored level. If another
        request already moved it, this call reports no change and appends
        nothing.
        """
        old = persona.guidance_level
        new = derive_guidance_level(persona.expires_at, now)
        if new == old:
            return EscalationResult(level=old)

        notice = CLOSURE_NOTICE if new >= CLOSURE_LEVEL and new > old else None
        changed = await self._store.set_guidance_level(persona.id, old, new, notice=notice)
        if not changed:
            return EscalationResult(level=new)

        persona.guidance_level = new
        logger.info("Guidance level for persona %s: %d -> %d", persona.id, old, new)
        return EscalationResult(level=new, changed=True, notice_appended=notice is not None)
