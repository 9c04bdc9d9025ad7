"""Email classification through an OpenAI-compatible chat completions API."""

from typing import Optional

import httpx

from mailsync.config.settings import ClassifierConfig, settings
from mailsync.exceptions import ExternalServiceError
from mailsync.models.email import CanonicalMessage, EmailCategory
from mailsync.utils.logging import get_logger

logger = get_logger(__name__)

SERVICE = "classifier"

SYSTEM_PROMPT = """You are an expert email categorization assistant. Categorize emails into exactly one of these categories:
- interested: Emails showing genuine interest in products/services, asking questions, or requesting information
- meeting_booked: Emails confirming meetings, appointments, or calendar invites
- not_interested: Clear rejections, unsubscribe requests, or negative responses
- spam: Promotional emails, newsletters, or obvious spam
- out_of_office: Automatic out-of-office or vacation replies

Respond with ONLY the category name in lowercase, nothing else."""


def parse_category(label: Optional[str]) -> EmailCategory:
    """Map a model reply to a category; anything unrecognized is uncategorized."""
    if not label:
        return EmailCategory.UNCATEGORIZED
    cleaned = label.strip().strip(".\"'`").lower().replace(" ", "_").replace("-", "_")
    try:
        return EmailCategory(cleaned)
    except ValueError:
        return EmailCategory.UNCATEGORIZED


class EmailClassifier:
    """Assigns one ``EmailCategory`` per message."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        config: Optional[ClassifierConfig] = None,
    ) -> None:
        self.config = config or settings.classifier
        self.base_url = self.config.api_base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

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

    def build_prompt(self, message: CanonicalMessage) -> str:
        preview = message.body[: self.config.body_preview_chars]
        return (
            f"Subject: {message.subject}\n"
            f"From: {message.sender.display}\n"
            f"Body:\n{preview}\n\n"
            "Categorize this email."
        )

    async def classify(self, message: CanonicalMessage) -> EmailCategory:
        """
        Classify one message.

        Returns:
            The category; an unrecognized model reply yields UNCATEGORIZED

        Raises:
            ExternalServiceError: On timeout, transport failure or non-2xx reply
        """
        payload = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": self.build_prompt(message)},
            ],
            "temperature": 0.3,
            "max_tokens": 10,
        }
        headers = {
            "Authorization": f"Bearer {self.config.api_key.get_secret_value()}",
            "Content-Type": "application/json",
        }

        try:
            response = await self.client.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise ExternalServiceError(SERVICE, "Classification timed out") from e
        except httpx.HTTPError as e:
            raise ExternalServiceError(SERVICE, f"Request failed: {e}") from e

        if response.status_code != 200:
            raise ExternalServiceError(SERVICE, f"HTTP {response.status_code}")

        try:
            label = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExternalServiceError(SERVICE, f"Malformed completion: {e}") from e

        category = parse_category(label)
        if category is EmailCategory.UNCATEGORIZED and (label or "").strip().lower() != "uncategorized":
            logger.warning("Unrecognized category label", label=label, message_id=message.message_id)
        else:
            logger.info("Email categorized", category=category.value, message_id=message.message_id)
        return category
