"""Expiration sweep: reminders and expiry for personas nearing their end.

Each cycle:
1. Finds active personas whose expiry is within ``reminder_days``
2. Flips past-expiry personas to expired and sends the expiry notice
3. Sends the one-time reminder to the rest
4. Reclaims conversations orphaned by interrupted deletions

Every transition is a conditional update, so overlapping sweeps (or a
chat request that detects expiry first) notify at most once. A failure on
one persona is logged and does not stop the batch.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from croniter import croniter

from rememory.config import Settings
from rememory.conversation.orchestrator import Notifier
from rememory.lifecycle.personas import PersonaManager
from rememory.storage.models import Persona
from rememory.storage.store import PersonaStore

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired: int = 0
    reminded: int = 0
    failed: int = 0
    reclaimed: int = 0


class ExpirationSweep:
    """Background job that runs on ``sweep_cron`` (every 6 hours by default)."""

    def __init__(
        self,
        store: PersonaStore,
        personas: PersonaManager,
        notifier: Notifier,
        settings: Settings,
    ) -> None:
        self._store = store
        self._personas = personas
        self._notifier = notifier
        self._settings = settings
        self._task: asyncio.Task | None = None
        self._running = False

    async def start(self) -> None:
        """Start the sweep loop."""
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop(), name="expiration-sweep")
        logger.info("Expiration sweep started (cron=%s)", self._settings.sweep_cron)

    async def stop(self) -> None:
        """Stop the sweep loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Expiration sweep stopped")

    def seconds_until_next_run(self, now: datetime | None = None) -> float:
        now = now or datetime.now(UTC)
        next_fire = croniter(self._settings.sweep_cron, now).get_next(datetime)
        return max(0.0, (next_fire - now).total_seconds())

    # ------------------------------------------------------------------
    # Sweep loop
    # ------------------------------------------------------------------

    async def _sweep_loop(self) -> None:
        """Periodic loop: sleep until the next cron fire -> sweep -> repeat."""
        while self._running:
            try:
                await asyncio.sleep(self.seconds_until_next_run())
                report = await self.run_once()
                logger.info(
                    "Sweep finished: %d expired, %d reminded, %d failed, %d reclaimed",
                    report.expired,
                    report.reminded,
                    report.failed,
                    report.reclaimed,
                )
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Expiration sweep failed")

    async def run_once(self, now: datetime | None = None) -> SweepReport:
        """Process every due persona once and reclaim orphans."""
        now = now or datetime.now(UTC)
        horizon = now + timedelta(days=self._settings.reminder_days)
        report = SweepReport()

        for persona in await self._store.personas_due_for_sweep(horizon):
            try:
                await self._process(persona, now, report)
            except Exception:
                report.failed += 1
                logger.exception("Sweep failed for persona %s", persona.id)

        try:
            report.reclaimed = await self._personas.reclaim_orphans()
        except Exception:
            logger.exception("Orphan reclaim failed")
        return report

    async def _process(self, persona: Persona, now: datetime, report: SweepReport) -> None:
        if persona.expires_at is not None and persona.expires_at <= now:
            if await self._store.mark_expired(persona.id):
                report.expired += 1
                logger.info("Persona %s expired", persona.id)
                await self._notifier.notify(persona.owner_id, persona.id, "expired", persona.name)
            return

        if persona.reminder_sent:
            return
        if await self._store.claim_reminder(persona.id):
            report.reminded += 1
            logger.info("Persona %s has %d days left, reminding owner", persona.id, self._settings.reminder_days)
            await self._notifier.notify(persona.owner_id, persona.id, "3day_reminder", persona.name)
