"""Reviewer notification delivery.

ResendNotifier posts to the Resend email API with a short tenacity retry
for transient failures; longer-term retries are driven by the HITL outbox
sweep. LoggingNotifier only logs, for local development and test email mode.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from proof_escrow.domain.exceptions import NotificationError
from proof_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from proof_escrow.config import Settings
    from proof_escrow.domain.protocols import Notifier

logger = get_logger(__name__)


class _TransientDeliveryError(Exception):
    pass


class ResendNotifier:
    """Send review notifications through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        sender: str,
        api_url: str = "https://api.resend.com/emails",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._sender = sender
        self._api_url = api_url
        self._transport = transport

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(_TransientDeliveryError),
        reraise=True,
    )
    async def _post(self, body: dict) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
                response = await client.post(
                    self._api_url,
                    json=body,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                )
        except httpx.HTTPError as exc:
            raise _TransientDeliveryError(str(exc)) from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise _TransientDeliveryError(f"Resend returned {response.status_code}")
        return response

    async def send(self, *, to: list[str], subject: str, html: str, text: str) -> str | None:
        if not to:
            raise NotificationError("No recipients configured for review notifications")

        body = {"from": self._sender, "to": to, "subject": subject, "html": html, "text": text}
        try:
            response = await self._post(body)
        except _TransientDeliveryError as exc:
            raise NotificationError(f"Email delivery failed: {exc}") from exc

        if response.status_code >= 400:
            raise NotificationError(
                f"Email rejected with {response.status_code}: {response.text[:300]}"
            )

        message_id = response.json().get("id")
        logger.info("notification.email_sent", to=to, subject=subject, message_id=message_id)
        return message_id


class LoggingNotifier:
    """Log notifications instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[dict] = []

    async def send(self, *, to: list[str], subject: str, html: str, text: str) -> str | None:
        self.sent.append({"to": to, "subject": subject, "text": text})
        logger.info("notification.email_logged", to=to, subject=subject)
        return None


def build_notifier(settings: Settings) -> Notifier:
    if settings.test_email_mode or not settings.resend_api_key:
        return LoggingNotifier()
    return ResendNotifier(
        api_key=settings.resend_api_key,
        sender=settings.hitl_email_from,
        api_url=settings.resend_api_url,
    )
