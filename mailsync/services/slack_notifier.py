"""Slack notifications for high-value messages (Web API ``chat.postMessage``)."""

from typing import Any, Optional

import httpx

from mailsync.config.settings import SlackConfig, settings
from mailsync.models.email import CanonicalMessage
from mailsync.utils.logging import get_logger

logger = get_logger(__name__)

PREVIEW_CHARS = 200


def _preview(body: str, limit: int = PREVIEW_CHARS) -> str:
    return body[:limit] + ("..." if len(body) > limit else "")


def build_message_blocks(message: CanonicalMessage) -> list[dict[str, Any]]:
    """Block Kit layout announcing one interested message."""
    return [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": "New Interested Email", "emoji": True},
        },
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*From:*\n{message.sender.display}"},
                {"type": "mrkdwn", "text": f"*Date:*\n{message.date:%Y-%m-%d %H:%M %Z}"},
            ],
        },
        {"type": "section", "text": {"type": "mrkdwn", "text": f"*Subject:*\n{message.subject}"}},
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*Preview:*\n{_preview(message.body)}"},
        },
        {
            "type": "context",
            "elements": [
                {
                    "type": "mrkdwn",
                    "text": f"Account: {message.account_id} | Folder: {message.folder}",
                }
            ],
        },
        {"type": "divider"},
    ]


class SlackNotifier:
    """Posts to one Slack channel. Disabled when token or channel is missing."""

    name = "slack"

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        config: Optional[SlackConfig] = None,
    ) -> None:
        self.config = config or settings.slack
        self.enabled = bool(self.config.bot_token.get_secret_value() and self.config.channel_id)
        self._client = client
        self._owns_client = client is None

        if self.enabled:
            logger.info("Slack notifier initialized", channel_id=self.config.channel_id)
        else:
            logger.warning("Slack notifier disabled - missing configuration")

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

    async def notify(self, message: CanonicalMessage) -> bool:
        """Announce an interested message. Returns False on any failure."""
        sent = await self._post(
            blocks=build_message_blocks(message),
            text=f"New interested email: {message.subject}",
        )
        if sent:
            logger.info("Slack notification sent", message_id=message.message_id)
        return sent

    async def send_custom_message(self, text: str, title: Optional[str] = None) -> bool:
        blocks: list[dict[str, Any]] = []
        if title:
            blocks.append(
                {"type": "header", "text": {"type": "plain_text", "text": title, "emoji": True}}
            )
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": text}})
        return await self._post(blocks=blocks, text=title or text)

    async def _post(self, blocks: list[dict[str, Any]], text: str) -> bool:
        if not self.enabled:
            logger.debug("Slack notifications disabled, skipping")
            return False

        try:
            response = await self.client.post(
                f"{self.config.api_base_url.rstrip('/')}/chat.postMessage",
                json={"channel": self.config.channel_id, "blocks": blocks, "text": text},
                headers={
                    "Authorization": f"Bearer {self.config.bot_token.get_secret_value()}",
                    "Content-Type": "application/json; charset=utf-8",
                },
            )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Error sending Slack notification", error=str(e))
            return False

        # Slack reports API errors with HTTP 200 and ok=false
        if response.status_code != 200 or not data.get("ok"):
            logger.error(
                "Slack API rejected message",
                status=response.status_code,
                error=data.get("error"),
            )
            return False
        return True
