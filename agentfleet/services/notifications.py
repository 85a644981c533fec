"""
Tenant notifications
"""
import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from agentfleet.config import settings

logger = logging.getLogger(__name__)

MESSAGES = {
    "payment_failed": (
        "Your payment failed. Please update your payment method to keep your agent running. "
        "Your agent will keep working for the next few days while we retry."
    ),
    "paused": "Your agent has been paused due to an unpaid balance. Update your payment method to resume.",
    "cancelled": "Your subscription has been cancelled. Your data is kept for 30 days before deletion.",
}


class Notifier(Protocol):
    async def send(self, contact: str, kind: str, context: Optional[Dict[str, Any]] = None) -> None:
        ...


class LoggingNotifier:
    """Notifier used when no delivery endpoint is configured"""

    async def send(self, contact: str, kind: str, context: Optional[Dict[str, Any]] = None) -> None:
        logger.info(f"[notify] {kind} -> {contact}: {MESSAGES.get(kind, kind)}")


class WebhookNotifier:
    """POSTs notifications to the platform's mail/notification service"""

    def __init__(
        self,
        url: str,
        timeout: float = settings.HTTP_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def send(self, contact: str, kind: str, context: Optional[Dict[str, Any]] = None) -> None:
        payload = {
            "to": contact,
            "kind": kind,
            "message": MESSAGES.get(kind, kind),
            "context": context or {},
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(self.url, json=payload)
            response.raise_for_status()
        logger.debug(f"[notify] {kind} delivered for {contact}")


def create_notifier(url: Optional[str] = settings.NOTIFY_WEBHOOK_URL) -> Notifier:
    if url:
        return WebhookNotifier(url)
    return LoggingNotifier()
