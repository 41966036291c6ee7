"""Background handlers for Rememory.

The expiration sweep runs on a cron schedule; the notifier is called by the
sweep and by the turn orchestrator when they flip a persona's state.
"""

from rememory.config import Settings


def build_email_headers(settings: Settings) -> dict[str, str]:
    """Build auth headers for the email webhook.

    The webhook speaks the SendGrid v3 mail API, which takes a Bearer key.
    """
    headers: dict[str, str] = {"content-type": "application/json"}
    if settings.email_api_key:
        headers["authorization"] = f"Bearer {settings.email_api_key}"
    return headers
