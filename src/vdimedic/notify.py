"""Report delivery for VDIMedic.

Reports go to a webhook (Slack, Discord or a generic JSON receiver such as a
mail relay) or, when none is configured, to the log.
"""

from __future__ import annotations

import httpx
from loguru import logger

from vdimedic.clients.base import Notifier
from vdimedic.models import NotificationConfig


class WebhookNotifier(Notifier):
    """Posts reports to a webhook.

    Payload format is picked from the URL:
    - Slack: {"text": "message"}
    - Discord: {"content": "message"}
    - Generic: {"recipients": [...], "subject": "...", "body": "..."}
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    def build_payload(self, recipients: list[str], subject: str, body: str) -> dict:
        """Build the JSON payload for the configured webhook."""
        text = f"*{subject}*\n{body}"
        if "slack.com" in self.url:
            return {"text": text}
        if "discord.com" in self.url:
            # Discord rejects content over 2000 chars
            return {"content": text[:2000]}
        return {"recipients": recipients, "subject": subject, "body": body}

    async def send(self, recipients: list[str], subject: str, body: str) -> bool:
        payload = self.build_payload(recipients, subject, body)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=payload)
        except httpx.TimeoutException:
            logger.warning("Webhook timed out")
            return False
        except httpx.RequestError as e:
            logger.warning(f"Webhook error: {e}")
            return False

        if response.is_error:
            logger.warning(f"Webhook failed: HTTP {response.status_code}")
            return False

        logger.info(f"Report sent via webhook: {subject}")
        return True


class LogNotifier(Notifier):
    """Writes reports to the log."""

    async def send(self, recipients: list[str], subject: str, body: str) -> bool:
        to = ", ".join(recipients) if recipients else "-"
        logger.info(f"Report for {to}: {subject}\n{body}")
        return True


def build_notifier(config: NotificationConfig) -> Notifier:
    """Pick the notifier for a configuration."""
    if config.webhook_url:
        return WebhookNotifier(config.webhook_url)
    return LogNotifier()
