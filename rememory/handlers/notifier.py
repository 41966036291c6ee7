"""EmailNotifier: reminder and expiry emails to persona owners.

Delivery is best-effort. Every attempt leaves a Notification row whose
``delivered`` flag records the outcome, and failures are logged, never
raised.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Literal
from uuid import UUID

import httpx

from rememory.config import Settings
from rememory.handlers import build_email_headers
from rememory.storage.store import PersonaStore

logger = logging.getLogger(__name__)

NotificationType = Literal["3day_reminder", "expired"]

RecipientResolver = Callable[[str], Awaitable[str | None]]

REMINDER_SUBJECT = "Rememory — 3 days left with your persona"
REMINDER_BODY = (
    "You have 3 days remaining with your persona on Rememory. Remember this is a "
    "temporary, supportive tool. If you'd like a copy of your conversation "
    "transcript, please download it from your dashboard before the session ends."
)
EXPIRY_SUBJECT = "Rememory — Your persona session has ended"
EXPIRY_BODY = (
    "Your Rememory session for {persona_name} has ended. The chat is now closed. "
    "If you need additional support, please contact a grief counselor. "
    "Thank you for using Rememory."
)


def render_email(notification_type: NotificationType, persona_name: str) -> tuple[str, str]:
    """Return (subject, body) for a notification type."""
    if notification_type == "3day_reminder":
        return REMINDER_SUBJECT, REMINDER_BODY
    if notification_type == "expired":
        return EXPIRY_SUBJECT, EXPIRY_BODY.format(persona_name=persona_name)
    raise ValueError(f"Unknown notification type: {notification_type}")


async def _owner_id_as_address(owner_id: str) -> str | None:
    return owner_id if "@" in owner_id else None


class EmailNotifier:
    """Posts notification emails to the configured mail webhook."""

    def __init__(
        self,
        store: PersonaStore,
        settings: Settings,
        resolve_recipient: RecipientResolver | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._resolve_recipient = resolve_recipient or _owner_id_as_address
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        if self._http is not None:
            return
        self._http = httpx.AsyncClient(
            headers=build_email_headers(self._settings),
            timeout=self._settings.email_timeout,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    async def notify(
        self,
        owner_id: str,
        persona_id: UUID,
        notification_type: NotificationType,
        persona_name: str,
    ) -> bool:
        """Send one notification. Returns whether the webhook accepted it."""
        delivered = await self._deliver(owner_id, persona_id, notification_type, persona_name)
        try:
            await self._store.record_notification(owner_id, persona_id, notification_type, delivered)
        except Exception:
            logger.exception(
                "Failed to record %s notification for persona %s", notification_type, persona_id
            )
        return delivered

    async def _deliver(
        self,
        owner_id: str,
        persona_id: UUID,
        notification_type: NotificationType,
        persona_name: str,
    ) -> bool:
        subject, body = render_email(notification_type, persona_name)
        try:
            recipient = await self._resolve_recipient(owner_id)
        except Exception:
            logger.exception("Recipient lookup failed for owner %s", owner_id)
            return False
        if not recipient:
            logger.warning(
                "No email address for owner %s, %s notification not sent",
                owner_id,
                notification_type,
            )
            return False

        payload = {
            "personalizations": [{"to": [{"email": recipient}]}],
            "from": {"email": self._settings.email_from},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
            "custom_args": {
                "userId": owner_id,
                "personaId": str(persona_id),
                "type": notification_type,
            },
        }

        await self.start()
        assert self._http is not None
        try:
            response = await self._http.post(self._settings.email_webhook_url, json=payload)
        except httpx.HTTPError as e:
            logger.warning("Email webhook error for persona %s: %s", persona_id, e)
            return False

        if response.status_code >= 300:
            logger.warning(
                "Email webhook returned %d for persona %s: %s",
                response.status_code,
                persona_id,
                response.text[:200],
            )
            return False

        logger.info(
            "Notification dispatched (owner=%s persona=%s type=%s)",
            owner_id,
            persona_id,
            notification_type,
        )
        return True
