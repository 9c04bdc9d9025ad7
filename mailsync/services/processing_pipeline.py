"""Classify, index and conditionally notify each synchronized message."""

import asyncio
from typing import Optional, Protocol, Sequence

from pydantic import BaseModel

from mailsync.config.settings import ClassifierConfig, settings
from mailsync.models.email import CanonicalMessage, EmailCategory
from mailsync.utils.logging import get_logger

logger = get_logger(__name__)


class Classifier(Protocol):
    async def classify(self, message: CanonicalMessage) -> EmailCategory: ...


class Indexer(Protocol):
    async def index_message(self, message: CanonicalMessage) -> str: ...


class Notifier(Protocol):
    name: str

    async def notify(self, message: CanonicalMessage) -> bool: ...


class ProcessingResult(BaseModel):
    """Outcome of one ``process()`` call. Notification failures never show here."""

    account_id: str
    message_id: str
    category: EmailCategory
    indexed: bool = False
    document_id: Optional[str] = None
    notifications_sent: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.indexed


class ProcessingPipeline:
    """
    Runs classify -> index -> notify for every message.

    Containment:
    - classification failure or timeout: log, use UNCATEGORIZED, keep going
    - index failure: log and drop the message (no retry here)
    - notification failure: log and swallow
    """

    def __init__(
        self,
        classifier: Classifier,
        indexer: Indexer,
        notifiers: Sequence[Notifier] = (),
        config: Optional[ClassifierConfig] = None,
    ) -> None:
        self.config = config or settings.classifier
        self.classifier = classifier
        self.indexer = indexer
        self.notifiers = list(notifiers)
        self.high_value_category = EmailCategory(self.config.high_value_category)

    async def process(self, message: CanonicalMessage) -> ProcessingResult:
        log = logger.bind(account_id=message.account_id, message_id=message.message_id)
        log.info("Processing message", subject=message.subject)

        category = await self._classify(message, log)
        categorized = message.model_copy(update={"category": category})

        try:
            document_id = await self.indexer.index_message(categorized)
        except Exception as e:
            log.error(
                "Indexing failed, message dropped",
                category=category.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ProcessingResult(
                account_id=message.account_id,
                message_id=message.message_id,
                category=category,
                error=str(e),
            )

        sent = 0
        if category is self.high_value_category:
            sent = await self._notify(categorized, log)

        log.info("Message processed", category=category.value, notifications_sent=sent)
        return ProcessingResult(
            account_id=message.account_id,
            message_id=message.message_id,
            category=category,
            indexed=True,
            document_id=document_id,
            notifications_sent=sent,
        )

    async def process_batch(self, messages: Sequence[CanonicalMessage]) -> list[ProcessingResult]:
        """Process sequentially in input order; one failure never stops the batch."""
        logger.info("Processing batch", count=len(messages))
        results = [await self.process(message) for message in messages]
        logger.info(
            "Batch processing completed",
            count=len(results),
            indexed=sum(1 for result in results if result.indexed),
        )
        return results

    async def _classify(self, message: CanonicalMessage, log) -> EmailCategory:
        try:
            return await asyncio.wait_for(
                self.classifier.classify(message), timeout=self.config.timeout_seconds
            )
        except asyncio.TimeoutError:
            log.warning(
                "Classification timed out, using uncategorized",
                timeout_seconds=self.config.timeout_seconds,
            )
        except Exception as e:
            log.warning(
                "Classification failed, using uncategorized",
                error=str(e),
                error_type=type(e).__name__,
            )
        return EmailCategory.UNCATEGORIZED

    async def _notify(self, message: CanonicalMessage, log) -> int:
        sent = 0
        for notifier in self.notifiers:
            notifier_name = getattr(notifier, "name", type(notifier).__name__)
            try:
                if await notifier.notify(message):
                    sent += 1
            except Exception as e:
                log.error("Notifier failed", notifier=notifier_name, error=str(e))
        return sent
