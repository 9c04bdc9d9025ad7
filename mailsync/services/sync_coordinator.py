"""Multi-account sync coordinator: owns the connection fleet and its event stream."""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from mailsync.config.settings import SyncConfig, settings
from mailsync.exceptions import UnknownAccountError
from mailsync.models.account import Account
from mailsync.models.sync import ConnectionState, SyncEvent, SyncEventType, SyncStatus
from mailsync.services.mailbox_connection import MailboxConnection
from mailsync.services.mailbox_transport import MailboxTransport
from mailsync.utils.crypto import CredentialCipher
from mailsync.utils.logging import get_logger

logger = get_logger(__name__)


class _AccountEntry:
    """Registry entry: one connection, its outbox and the task forwarding it."""

    def __init__(self, connection: MailboxConnection, outbox: asyncio.Queue) -> None:
        self.connection = connection
        self.outbox = outbox
        self.forwarder: Optional[asyncio.Task] = None


class SyncCoordinator:
    """
    Owns every ``MailboxConnection`` keyed by account id.

    Each connection writes to its own bounded queue; a forwarder task per
    account applies the status update for the event and then moves it onto
    a single bounded fan-in queue, which ``next_event()`` reads. A slow
    consumer therefore backs up into the per-account queues and finally
    pauses the producing fetch loop of that account only.

    Statuses are mutated here and nowhere else.
    """

    def __init__(
        self,
        cipher: Optional[CredentialCipher] = None,
        transport_factory: Optional[Callable[[Account], MailboxTransport]] = None,
        config: Optional[SyncConfig] = None,
    ) -> None:
        self.config = config or settings.sync
        self.cipher = cipher or CredentialCipher()
        self._transport_factory = transport_factory
        self._entries: dict[str, _AccountEntry] = {}
        self._statuses: dict[str, SyncStatus] = {}
        self._events: asyncio.Queue = asyncio.Queue(maxsize=self.config.event_queue_size)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------
    @property
    def account_count(self) -> int:
        return len(self._entries)

    @property
    def account_ids(self) -> list[str]:
        return list(self._entries)

    def get_connection(self, account_id: str) -> MailboxConnection:
        return self._entry(account_id).connection

    def _entry(self, account_id: str) -> _AccountEntry:
        entry = self._entries.get(account_id)
        if entry is None:
            raise UnknownAccountError(account_id)
        return entry

    async def add_account(self, account: Account) -> bool:
        """
        Register a connection for ``account``.

        Returns:
            True if registered, False if the account id was already known
        """
        if account.id in self._entries:
            logger.warning("Account already registered", account_id=account.id)
            return False

        outbox: asyncio.Queue = asyncio.Queue(maxsize=self.config.account_queue_size)
        connection = MailboxConnection(
            account,
            self.cipher,
            outbox,
            transport_factory=self._transport_factory,
            config=self.config,
        )
        entry = _AccountEntry(connection, outbox)
        entry.forwarder = asyncio.create_task(
            self._forward(account.id, outbox), name=f"forward:{account.id}"
        )
        self._entries[account.id] = entry
        self._statuses[account.id] = SyncStatus(account_id=account.id)

        logger.info("Account registered", account_id=account.id, email=account.email)
        return True

    async def remove_account(self, account_id: str) -> bool:
        """
        Disconnect and deregister an account. Events it had queued are dropped.

        Returns:
            True if the account was registered
        """
        entry = self._entries.pop(account_id, None)
        if entry is None:
            return False

        await entry.connection.disconnect()
        if entry.forwarder is not None:
            entry.forwarder.cancel()
            await asyncio.gather(entry.forwarder, return_exceptions=True)
        self._statuses.pop(account_id, None)

        logger.info("Account removed", account_id=account_id)
        return True

    # ------------------------------------------------------------------
    # Sync control
    # ------------------------------------------------------------------
    async def start_sync(self, account_id: str) -> int:
        """
        Connect, backfill and enter live mode for one account.

        An explicit start gives an exhausted connection a fresh reconnect
        budget. A connection that is already live is left alone.

        Returns:
            Number of messages emitted by the backfill

        Raises:
            UnknownAccountError: If the account is not registered
            AuthenticationError, NetworkError: If the initial attempt fails
                (a reconnect is already scheduled at that point)
        """
        connection = self._entry(account_id).connection
        if connection.state is ConnectionState.LIVE:
            logger.info("Sync already running", account_id=account_id)
            return 0

        connection.reset_backoff()
        logger.info("Starting sync", account_id=account_id)
        return await connection.sync()

    async def start_all_syncs(self) -> dict[str, Exception]:
        """
        Start every registered account concurrently.

        One account's failure never prevents the others from starting.

        Returns:
            Failures keyed by account id (empty when all started)
        """
        account_ids = list(self._entries)
        results = await asyncio.gather(
            *(self.start_sync(account_id) for account_id in account_ids),
            return_exceptions=True,
        )

        failures: dict[str, Exception] = {}
        for account_id, result in zip(account_ids, results):
            if isinstance(result, Exception):
                failures[account_id] = result
                logger.error(
                    "Failed to start sync",
                    account_id=account_id,
                    error=str(result),
                    error_type=type(result).__name__,
                )

        logger.info(
            "Start all syncs complete",
            total=len(account_ids),
            started=len(account_ids) - len(failures),
            failed=len(failures),
        )
        return failures

    async def stop_sync(self, account_id: str) -> None:
        """
        Disconnect an account but keep it registered for a later restart.

        Raises:
            UnknownAccountError: If the account is not registered
        """
        entry = self._entry(account_id)
        await entry.connection.disconnect()
        status = self._statuses.get(account_id)
        if status is not None:
            status.is_connected = False
        logger.info("Sync stopped", account_id=account_id)

    async def stop_all_syncs(self) -> None:
        await asyncio.gather(
            *(self.stop_sync(account_id) for account_id in list(self._entries)),
            return_exceptions=True,
        )
        logger.info("All syncs stopped", accounts=len(self._entries))

    async def shutdown(self) -> None:
        """Disconnect and deregister every account."""
        for account_id in list(self._entries):
            await self.remove_account(account_id)
        logger.info("Sync coordinator shut down")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def get_sync_status(
        self, account_id: Optional[str] = None
    ) -> Union[SyncStatus, list[SyncStatus], None]:
        """
        Status of one account, or of every registered account.

        Returns copies; an unknown account id yields None.
        """
        if account_id is None:
            return [status.model_copy() for status in self._statuses.values()]
        status = self._statuses.get(account_id)
        return status.model_copy() if status is not None else None

    def _apply_status(self, event: SyncEvent) -> None:
        status = self._statuses.get(event.account_id)
        entry = self._entries.get(event.account_id)
        if status is None or entry is None:
            return

        if event.type is SyncEventType.MESSAGE:
            status.emails_synced += 1
        elif event.session != entry.connection.session:
            # lifecycle event from a session stop_sync() already ended
            return
        elif event.type is SyncEventType.CONNECTED:
            status.is_connected = True
            status.last_sync = datetime.now(timezone.utc)
            status.error = None
        elif event.type is SyncEventType.DISCONNECTED:
            status.is_connected = False
        elif event.type in (SyncEventType.ERROR, SyncEventType.EXHAUSTED):
            status.is_connected = False
            status.error = event.payload if isinstance(event.payload, str) else None

    # ------------------------------------------------------------------
    # Event stream
    # ------------------------------------------------------------------
    async def _forward(self, account_id: str, outbox: asyncio.Queue) -> None:
        while True:
            event: SyncEvent = await outbox.get()
            try:
                self._apply_status(event)
                await self._events.put(event)
            finally:
                outbox.task_done()

    async def next_event(self, timeout: Optional[float] = None) -> SyncEvent:
        """
        Wait for the next event from any account.

        Raises:
            asyncio.TimeoutError: If ``timeout`` elapses first
        """
        if timeout is None:
            return await self._events.get()
        return await asyncio.wait_for(self._events.get(), timeout=timeout)
