"""Email provider integration."""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

RESEND_ENDPOINT = "https://api.resend.com/emails"
DEFAULT_FROM = "Metricpulse Insights <insights@metricpulse.io>"


class NotificationError(RuntimeError):
    """The provider rejected or failed to accept a message."""


@dataclass(slots=True)
class EmailMessage:
    to: str
    subject: str
    html: str


class EmailProvider:
    def __init__(self, *, session: httpx.AsyncClient | None = None) -> None:
        self.provider = os.environ.get("ESP_PROVIDER", "log")
        self.resend_api_key = os.environ.get("RESEND_API_KEY")
        self.sender = os.environ.get("EMAIL_FROM", DEFAULT_FROM)
        self._session = session

    async def send(self, message: EmailMessage) -> str:
        """Deliver ``message`` and return the provider's message id."""
        if self.provider == "resend":
            if not self.resend_api_key:
                raise NotificationError("RESEND_API_KEY is not configured")
            return await self._send_resend(message)
        message_id = f"log-{uuid.uuid4().hex[:12]}"
        logger.info("Email (log) → %s: %s [%s]", message.to, message.subject, message_id)
        return message_id

    async def _send_resend(self, message: EmailMessage) -> str:
        payload = {
            "from": self.sender,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
        }
        headers = {"Authorization": f"Bearer {self.resend_api_key}"}
        try:
            if self._session is not None:
                response = await self._session.post(RESEND_ENDPOINT, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=15.0) as client:
                    response = await client.post(RESEND_ENDPOINT, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NotificationError(f"Resend delivery failed: {exc}") from exc
        message_id = response.json().get("id")
        if not message_id:
            raise NotificationError("Resend response missing message id")
        return str(message_id)
