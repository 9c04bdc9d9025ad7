"""Sync worker: restores accounts, runs the coordinator and feeds the pipeline."""

import asyncio
from typing import Optional

from mailsync.models.account import Account
from mailsync.models.email import CanonicalMessage
from mailsync.models.sync import SyncEvent, SyncEventType
from mailsync.services.account_store import AccountStore
from mailsync.services.classifier import EmailClassifier
from mailsync.services.index_service import IndexService
from mailsync.services.processing_pipeline import ProcessingPipeline
from mailsync.services.slack_notifier import SlackNotifier
from mailsync.services.sync_coordinator import SyncCoordinator
from mailsync.services.webhook_notifier import WebhookNotifier
from mailsync.utils.crypto import CredentialCipher
from mailsync.utils.logging import account_context, configure_logging, get_logger

configure_logging()
logger = get_logger(__name__)


class SyncWorker:
    """
    Sync worker.

    Loads active accounts from the account store, starts every sync and
    consumes the coordinator's event stream, handing each message event to
    the processing pipeline one at a time. Syncs are started in the
    background so the stream is drained while backfills are still running.
    """

    def __init__(
        self,
        coordinator: Optional[SyncCoordinator] = None,
        account_store: Optional[AccountStore] = None,
        pipeline: Optional[ProcessingPipeline] = None,
        poll_timeout: float = 1.0,
        slack_notifier: Optional[SlackNotifier] = None,
        webhook_notifier: Optional[WebhookNotifier] = None,
    ) -> None:
        cipher = None
        if coordinator is None or account_store is None:
            cipher = CredentialCipher()
        self.coordinator = coordinator or SyncCoordinator(cipher=cipher)
        self.account_store = account_store or AccountStore(cipher=cipher)
        # disabled notifiers stay in the pipeline; the webhook URL can be set at runtime
        self.slack_notifier = slack_notifier or SlackNotifier()
        self.webhook_notifier = webhook_notifier or WebhookNotifier()
        self._owned_clients: list = [self.slack_notifier, self.webhook_notifier]
        self.index_service: Optional[IndexService] = None
        if pipeline is None:
            self.index_service = IndexService()
            classifier = EmailClassifier()
            pipeline = ProcessingPipeline(
                classifier, self.index_service, [self.slack_notifier, self.webhook_notifier]
            )
            self._owned_clients += [self.index_service, classifier]
        self.pipeline = pipeline
        self.poll_timeout = poll_timeout
        self.running = False
        self.processed = 0
        self._background: set[asyncio.Task] = set()
        logger.info("Sync worker initialized")

    async def run(self) -> None:
        """Main worker loop."""
        self.running = True
        if self.index_service is not None:
            await self.index_service.connect()
            try:
                await self.index_service.ensure_index()
            except Exception as e:
                logger.warning("Could not verify message index", error=str(e))

        await self.restore_accounts()
        self.start_all_in_background()
        logger.info("Sync worker started", accounts=self.coordinator.account_count)

        while self.running:
            try:
                event = await self.coordinator.next_event(timeout=self.poll_timeout)
            except asyncio.TimeoutError:
                continue
            try:
                await self.handle_event(event)
            except Exception as e:
                logger.error(
                    "Event handling error",
                    account_id=event.account_id,
                    event_type=event.type.value,
                    error=str(e),
                )

        logger.info("Sync worker stopped", processed=self.processed)

    async def stop(self) -> None:
        """Stop worker gracefully."""
        logger.info("Stopping sync worker...")
        self.running = False
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        await self.coordinator.shutdown()
        await self.account_store.disconnect()
        for client in self._owned_clients:
            await client.disconnect()

    async def restore_accounts(self) -> int:
        """Register every active stored account. Returns how many were added."""
        try:
            accounts = await self.account_store.list_accounts(active_only=True)
        except Exception as e:
            logger.error("Failed to restore accounts", error=str(e))
            return 0

        added = 0
        for account in accounts:
            if await self.coordinator.add_account(account):
                added += 1
        logger.info("Accounts restored", count=added)
        return added

    async def handle_event(self, event: SyncEvent) -> None:
        if event.type is SyncEventType.MESSAGE and isinstance(event.payload, CanonicalMessage):
            with account_context(event.account_id, message_id=event.payload.message_id):
                await self.pipeline.process(event.payload)
            self.processed += 1
        elif event.type in (SyncEventType.ERROR, SyncEventType.EXHAUSTED):
            logger.warning(
                "Account sync problem",
                account_id=event.account_id,
                event_type=event.type.value,
                error=event.payload,
            )
        else:
            logger.info("Account sync event", account_id=event.account_id, event_type=event.type.value)

    async def add_and_start(self, account: Account) -> None:
        """Register a new account and start its sync in the background."""
        await self.coordinator.add_account(account)
        self.start_in_background(account.id)

    def start_in_background(self, account_id: str) -> asyncio.Task:
        """
        Start one account's sync without waiting for its backfill.

        Raises:
            UnknownAccountError: If the account is not registered
        """
        self.coordinator.get_connection(account_id)
        return self._spawn(self._start_sync(account_id), name=f"start-sync:{account_id}")

    def start_all_in_background(self) -> asyncio.Task:
        return self._spawn(self.coordinator.start_all_syncs(), name="start-all-syncs")

    async def _start_sync(self, account_id: str) -> None:
        try:
            await self.coordinator.start_sync(account_id)
        except Exception as e:
            logger.error("Sync start failed", account_id=account_id, error=str(e))

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task


async def main():
    """Entry point for running the sync worker without the control API."""
    worker = SyncWorker()
    try:
        await worker.run()
    except (KeyboardInterrupt, asyncio.CancelledError):
        await worker.stop()


if __name__ == "__main__":
    asyncio.run(main())
