"""Outbound JSON webhook for high-value messages."""

from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from mailsync.config.settings import WebhookConfig, settings
from mailsync.models.email import CanonicalMessage
from mailsync.utils.logging import get_logger

logger = get_logger(__name__)

INTERESTED_EVENT = "email.interested"
USER_AGENT = "mailsync/1.0"


def build_payload(message: CanonicalMessage, event: str = INTERESTED_EVENT) -> dict[str, Any]:
    return {
        "event": event,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": {
            "message_id": message.message_id,
            "account_id": message.account_id,
            "from": message.sender.model_dump(),
            "to": [address.model_dump() for address in message.to],
            "subject": message.subject,
            "body": message.body,
            "date": message.date.isoformat(),
            "folder": message.folder,
            "category": message.category.value if message.category else None,
            "has_attachments": message.has_attachments,
            "attachment_count": len(message.attachments or []),
        },
    }


class WebhookNotifier:
    """POSTs events to a single configured URL. Disabled when no URL is set."""

    name = "webhook"

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        config: Optional[WebhookConfig] = None,
    ) -> None:
        self.config = config or settings.webhook
        self.url = self.config.url
        self._client = client
        self._owns_client = client is None

        if self.enabled:
            logger.info("Webhook notifier initialized", url=self.url)
        else:
            logger.warning("Webhook notifier disabled - no URL configured")

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
            self._owns_client = True
        return self._client

    async def disconnect(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def set_url(self, url: str) -> None:
        """Point the notifier at a new endpoint; an empty URL disables it."""
        self.url = url
        logger.info("Webhook URL updated", url=url, enabled=self.enabled)

    async def notify(self, message: CanonicalMessage) -> bool:
        sent = await self._post(build_payload(message))
        if sent:
            logger.info("Webhook dispatched", message_id=message.message_id)
        return sent

    async def dispatch_custom_event(self, event: str, data: Any) -> bool:
        payload = {
            "event": event,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "source": "mailsync",
        }
        sent = await self._post(payload)
        if sent:
            logger.info("Custom webhook dispatched", webhook_event=event)
        return sent

    async def _post(self, payload: dict[str, Any]) -> bool:
        if not self.enabled:
            logger.debug("Webhook dispatching disabled, skipping")
            return False

        try:
            response = await self.client.post(
                self.url,
                json=payload,
                headers={"Content-Type": "application/json", "User-Agent": USER_AGENT},
            )
        except httpx.HTTPError as e:
            logger.error("Error dispatching webhook", error=str(e), webhook_event=payload.get("event"))
            return False

        if response.is_success:
            logger.debug("Webhook response", status=response.status_code)
            return True
        logger.error("Webhook endpoint rejected event", status=response.status_code)
        return False
