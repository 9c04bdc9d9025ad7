"""Per-account mailbox connection: connect, backfill, live watch, reconnect."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

from mailsync.config.settings import SyncConfig, settings
from mailsync.exceptions import (
    AuthenticationError,
    ConnectionFailure,
    DecryptionError,
    InvalidStateTransition,
    NetworkError,
    ParseError,
)
from mailsync.models.account import Account
from mailsync.models.email import CanonicalMessage
from mailsync.models.sync import ConnectionState, SyncEvent, SyncEventType
from mailsync.services.mailbox_transport import ImapTransport, MailboxTransport
from mailsync.services.message_normalizer import normalize_raw_message
from mailsync.utils.crypto import CredentialCipher
from mailsync.utils.logging import get_logger

logger = get_logger(__name__)

# disconnect() may move any state to DISCONNECTED; everything else must follow this table
_TRANSITIONS: dict[ConnectionState, set[ConnectionState]] = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {ConnectionState.LIVE, ConnectionState.ERROR},
    ConnectionState.LIVE: {ConnectionState.ERROR},
    ConnectionState.ERROR: {ConnectionState.DISCONNECTED},
}


def reconnect_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Linear-capped backoff: ``min(base_delay * attempt, max_delay)``."""
    return min(base_delay * attempt, max_delay)


class MailboxConnection:
    """
    One account's IMAP session and its state machine.

    States move ``disconnected -> connecting -> live -> (error -> disconnected)``.
    Produced messages and lifecycle signals are put on ``outbox``, a bounded
    per-account queue drained by the sync coordinator.

    Every ``disconnect()`` bumps a session generation; work started under an
    older generation finishes as a no-op, so a late network reply can never
    emit events or change state after the account was stopped.
    """

    def __init__(
        self,
        account: Account,
        cipher: CredentialCipher,
        outbox: asyncio.Queue,
        transport_factory: Optional[Callable[[Account], MailboxTransport]] = None,
        config: Optional[SyncConfig] = None,
    ) -> None:
        self.account = account
        self.config = config or settings.sync
        self.outbox = outbox
        self._cipher = cipher
        self._transport_factory = transport_factory or (
            lambda account: ImapTransport(timeout=self.config.connect_timeout)
        )

        self._state = ConnectionState.DISCONNECTED
        self._transport: Optional[MailboxTransport] = None
        self._connecting_session: Optional[int] = None
        self._generation = 0
        self._fetch_lock = asyncio.Lock()
        self._watch_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0
        self._exhausted = False
        self._last_uid = 0

        self.log = logger.bind(account_id=account.id, email=account.email)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def account_id(self) -> str:
        return self.account.id

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session(self) -> int:
        """Current session number; every disconnect() starts a new one."""
        return self._generation

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def is_watching(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    def _set_state(self, new_state: ConnectionState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise InvalidStateTransition(
                f"{self._state.value} -> {new_state.value} not allowed for {self.account_id}"
            )
        self._state = new_state

    def _require_live(self, operation: str) -> MailboxTransport:
        if self._state is not ConnectionState.LIVE or self._transport is None:
            raise InvalidStateTransition(
                f"Cannot {operation} while {self._state.value} ({self.account_id})"
            )
        return self._transport

    async def _emit(
        self,
        generation: int,
        event_type: SyncEventType,
        payload: Union[CanonicalMessage, str, None] = None,
    ) -> bool:
        if generation != self._generation:
            return False
        await self.outbox.put(
            SyncEvent(type=event_type, account_id=self.account_id, payload=payload, session=generation)
        )
        return True

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        """
        Open an authenticated session and select the inbox.

        No-op while another connect of the current session is in flight or
        the session is already live. A connect left over from a session that
        disconnect() ended does not block a new one. On failure the reconnect
        policy is applied and the error is re-raised to the caller.

        Raises:
            AuthenticationError: Credentials rejected or not decryptable
            NetworkError: Server unreachable, connect timed out, or the
                transport failed in an unexpected way
        """
        if self._connecting_session == self._generation or self._state is ConnectionState.LIVE:
            return

        generation = self._generation
        self._connecting_session = generation
        self._set_state(ConnectionState.CONNECTING)
        transport = self._transport_factory(self.account)
        self.log.info("Connecting to mailbox", host=self.account.imap.host, port=self.account.imap.port)

        try:
            try:
                await asyncio.wait_for(self._open(transport), timeout=self.config.connect_timeout)
            except asyncio.TimeoutError as e:
                raise NetworkError(
                    f"Connect timed out after {self.config.connect_timeout}s"
                ) from e
            except ConnectionFailure:
                raise
            except Exception as e:
                # str(e) may quote credential characters
                raise NetworkError(f"Unexpected {type(e).__name__} while connecting") from e
        except ConnectionFailure as e:
            await transport.close()
            if generation == self._generation:
                self.log.error("Mailbox connection failed", error=str(e), error_type=type(e).__name__)
                self._set_state(ConnectionState.ERROR)
                await self._emit(generation, SyncEventType.ERROR, str(e))
                self._set_state(ConnectionState.DISCONNECTED)
                await self._schedule_reconnect()
            raise
        except asyncio.CancelledError:
            await transport.close()
            raise
        finally:
            if self._connecting_session == generation:
                self._connecting_session = None

        if generation != self._generation:
            # disconnect() ran while we were connecting
            await transport.close()
            return

        self._transport = transport
        self._last_uid = 0
        self._reconnect_attempts = 0
        self._exhausted = False
        self._set_state(ConnectionState.LIVE)
        self.log.info("Mailbox connected")
        await self._emit(generation, SyncEventType.CONNECTED)

    async def _open(self, transport: MailboxTransport) -> None:
        try:
            password = self._cipher.decrypt(self.account.imap.password_ciphertext)
        except DecryptionError as e:
            raise AuthenticationError(f"Stored credential unusable: {e}") from e
        try:
            await transport.open(self.account.imap, password)
        finally:
            del password
        await transport.select(self.config.mailbox)

    # ------------------------------------------------------------------
    # Backfill and live mode
    # ------------------------------------------------------------------
    async def backfill(self, days: Optional[int] = None) -> int:
        """
        Emit every message received within the trailing window.

        Emission order is not guaranteed to be chronological.

        Returns:
            Number of messages emitted
        """
        transport = self._require_live("backfill")
        generation = self._generation
        if days is None:
            days = self.config.backfill_days
        since = (datetime.now(timezone.utc) - timedelta(days=days)).date()

        async with self._fetch_lock:
            try:
                uids = await transport.search_since(since)
            except ConnectionFailure as e:
                await self._connection_lost(generation, e)
                raise
            self.log.info("Backfill search complete", days=days, matches=len(uids))
            emitted = await self._fetch_and_emit(transport, generation, uids)

        self.log.info("Backfill complete", emitted=emitted, matches=len(uids))
        return emitted

    async def fetch_new_messages(self) -> int:
        """
        Fetch unseen messages newer than anything already handled this session.

        Returns:
            Number of messages emitted
        """
        transport = self._require_live("fetch new messages")
        generation = self._generation

        async with self._fetch_lock:
            try:
                uids = await transport.search_unseen()
            except ConnectionFailure as e:
                await self._connection_lost(generation, e)
                raise
            fresh = [uid for uid in uids if _uid_value(uid) > self._last_uid]
            if not fresh:
                return 0
            self.log.info("Fetching new messages", unseen=len(uids), new=len(fresh))
            return await self._fetch_and_emit(transport, generation, fresh)

    async def _fetch_and_emit(self, transport: MailboxTransport, generation: int, uids: list[str]) -> int:
        emitted = 0
        for uid in uids:
            if generation != self._generation:
                break
            try:
                raw = await transport.fetch(uid)
                message = normalize_raw_message(
                    raw,
                    account_id=self.account_id,
                    folder=self.config.mailbox,
                    fallback_date=datetime.now(timezone.utc),
                )
            except ConnectionFailure as e:
                await self._connection_lost(generation, e)
                raise
            except ParseError as e:
                self.log.error("Failed to parse message", uid=uid, error=str(e))
                self._mark_handled(uid)
                continue
            except Exception as e:
                self.log.error(
                    "Unexpected error handling message",
                    uid=uid,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self._mark_handled(uid)
                continue

            self._mark_handled(uid)
            if await self._emit(generation, SyncEventType.MESSAGE, message):
                emitted += 1
                self.log.debug("Message emitted", uid=uid, message_id=message.message_id)
        return emitted

    def _mark_handled(self, uid: str) -> None:
        self._last_uid = max(self._last_uid, _uid_value(uid))

    def watch(self) -> None:
        """Enter live mode: react to server new-mail signals in a background task."""
        self._require_live("watch")
        if self.is_watching:
            return
        self._watch_task = asyncio.create_task(
            self._watch_loop(self._generation), name=f"watch:{self.account_id}"
        )
        self.log.info("Live mode started")

    async def _watch_loop(self, generation: int) -> None:
        while generation == self._generation and self._state is ConnectionState.LIVE:
            transport = self._transport
            if transport is None:
                return
            try:
                count = await transport.wait_for_new_mail(self.config.idle_timeout)
            except ConnectionFailure as e:
                await self._connection_lost(generation, e)
                return

            if generation != self._generation:
                return
            if count is None:
                continue

            self.log.info("New mail signal", count=count)
            try:
                await self.fetch_new_messages()
            except ConnectionFailure:
                return
            except InvalidStateTransition:
                return
            except Exception as e:
                self.log.error("New mail fetch failed", error=str(e), error_type=type(e).__name__)

    # ------------------------------------------------------------------
    # Failure handling and reconnect
    # ------------------------------------------------------------------
    async def _connection_lost(self, generation: int, error: Exception) -> None:
        if generation != self._generation or self._state is not ConnectionState.LIVE:
            return

        self.log.error("Mailbox session lost", error=str(error), error_type=type(error).__name__)
        self._set_state(ConnectionState.ERROR)
        transport, self._transport = self._transport, None
        self._stop_watch_task()
        if transport is not None:
            await transport.close()

        await self._emit(generation, SyncEventType.ERROR, str(error))
        self._set_state(ConnectionState.DISCONNECTED)
        await self._emit(generation, SyncEventType.DISCONNECTED)
        await self._schedule_reconnect()

    async def _schedule_reconnect(self) -> None:
        # attempt k waits min(base * k, max); k starts at 1
        if self._reconnect_attempts >= self.config.max_reconnect_attempts:
            self._cancel_reconnect()
            if not self._exhausted:
                self._exhausted = True
                self.log.error(
                    "Max reconnection attempts reached",
                    max_attempts=self.config.max_reconnect_attempts,
                )
                await self._emit(
                    self._generation,
                    SyncEventType.EXHAUSTED,
                    f"Gave up after {self._reconnect_attempts} reconnect attempts",
                )
            return

        self._cancel_reconnect()
        self._reconnect_attempts += 1
        delay = reconnect_delay(
            self._reconnect_attempts,
            self.config.reconnect_base_delay,
            self.config.reconnect_max_delay,
        )
        self.log.info(
            "Reconnect scheduled",
            attempt=self._reconnect_attempts,
            max_attempts=self.config.max_reconnect_attempts,
            delay_seconds=delay,
        )
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay, self._generation), name=f"reconnect:{self.account_id}"
        )

    async def _reconnect_after(self, delay: float, generation: int) -> None:
        await asyncio.sleep(delay)
        if generation != self._generation:
            return
        # cleared first so a failure inside sync() can schedule the next attempt
        self._reconnect_task = None
        self.log.info("Attempting reconnect", attempt=self._reconnect_attempts)
        try:
            await self.sync()
        except ConnectionFailure as e:
            self.log.warning("Reconnect attempt failed", attempt=self._reconnect_attempts, error=str(e))
        except InvalidStateTransition as e:
            self.log.debug("Reconnect abandoned", reason=str(e))

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def reset_backoff(self) -> None:
        """Give the connection a fresh reconnect budget (explicit restart)."""
        self._cancel_reconnect()
        self._reconnect_attempts = 0
        self._exhausted = False

    # ------------------------------------------------------------------
    # Full cycle and teardown
    # ------------------------------------------------------------------
    async def sync(self) -> int:
        """Connect, backfill, then enter live mode. Returns the backfill count."""
        generation = self._generation
        await self.connect()
        if generation != self._generation or self._state is not ConnectionState.LIVE:
            return 0
        emitted = await self.backfill()
        self.watch()
        return emitted

    def _stop_watch_task(self) -> Optional[asyncio.Task]:
        task, self._watch_task = self._watch_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            return task
        return None

    async def disconnect(self) -> None:
        """
        Release the session, cancel any pending reconnect and stop live mode.

        Idempotent and safe to call from an error handler. In-flight network
        calls are not interrupted, but their completion becomes a no-op.
        """
        self._generation += 1
        self._cancel_reconnect()
        watch_task = self._stop_watch_task()
        transport, self._transport = self._transport, None
        previous = self._state
        self._state = ConnectionState.DISCONNECTED

        if transport is not None:
            await transport.close()
        if watch_task is not None:
            await asyncio.gather(watch_task, return_exceptions=True)

        if previous is not ConnectionState.DISCONNECTED:
            self.log.info("Mailbox disconnected", previous_state=previous.value)


def _uid_value(uid: str) -> int:
    try:
        return int(uid)
    except (TypeError, ValueError):
        return 0
