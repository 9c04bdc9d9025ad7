"""IMAP transport used by mailbox connections."""

import asyncio
import imaplib
import re
import select
import ssl
import time
from abc import ABC, abstractmethod
from datetime import date
from typing import Optional

from mailsync.exceptions import AuthenticationError, NetworkError, ParseError
from mailsync.models.account import ImapSettings
from mailsync.utils.logging import get_logger

logger = get_logger(__name__)

# IMAP dates are always English month abbreviations regardless of locale
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_EXISTS_RE = re.compile(rb"^\* (\d+) EXISTS", re.IGNORECASE)


def imap_date(value: date) -> str:
    """Format a date for IMAP SEARCH criteria (e.g. ``01-Jan-2024``)."""
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"


class MailboxTransport(ABC):
    """
    Protocol-level operations a mailbox connection needs.

    Implementations translate their library's failures into
    ``AuthenticationError`` / ``NetworkError`` (connection-level) and
    ``ParseError`` (single message).
    """

    @abstractmethod
    async def open(self, imap: ImapSettings, password: str) -> None:
        """Connect and authenticate."""

    @abstractmethod
    async def select(self, mailbox: str) -> int:
        """Open a mailbox and return its message count."""

    @abstractmethod
    async def search_since(self, since: date) -> list[str]:
        """Return UIDs of messages received on or after ``since``."""

    @abstractmethod
    async def search_unseen(self) -> list[str]:
        """Return UIDs of unseen messages."""

    @abstractmethod
    async def fetch(self, uid: str) -> bytes:
        """Return the full RFC 822 bytes of one message without marking it seen."""

    @abstractmethod
    async def wait_for_new_mail(self, timeout: float) -> Optional[int]:
        """
        Block until the server pushes a new-mail count.

        Returns:
            The mailbox message count reported by the server, or None when
            ``timeout`` elapsed without a signal.
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the session. Must never raise."""


class ImapTransport(MailboxTransport):
    """
    ``imaplib`` based transport.

    Every blocking ``imaplib`` call runs in a worker thread via
    ``asyncio.to_thread`` so one slow server never stalls other accounts.
    Live mode uses IDLE when the server advertises it and falls back to
    NOOP polling otherwise.
    """

    def __init__(self, timeout: float = 30.0, poll_interval: float = 30.0) -> None:
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._conn: Optional[imaplib.IMAP4] = None
        self._exists: Optional[int] = None
        self._closed = False

    # ------------------------------------------------------------------
    async def open(self, imap: ImapSettings, password: str) -> None:
        await asyncio.to_thread(self._open_sync, imap, password)

    def _open_sync(self, imap: ImapSettings, password: str) -> None:
        context = ssl.create_default_context()
        try:
            if imap.secure:
                conn = imaplib.IMAP4_SSL(imap.host, imap.port, ssl_context=context, timeout=self.timeout)
            else:
                conn = imaplib.IMAP4(imap.host, imap.port, timeout=self.timeout)
                conn.starttls(ssl_context=context)
        except (OSError, imaplib.IMAP4.error) as e:
            raise NetworkError(f"Cannot reach {imap.host}:{imap.port}: {e}") from e

        try:
            conn.login(imap.user, password)
        except imaplib.IMAP4.abort as e:
            self._logout_quietly(conn)
            raise NetworkError(f"Connection dropped during login: {e}") from e
        except imaplib.IMAP4.error as e:
            self._logout_quietly(conn)
            raise AuthenticationError(f"Login rejected for {imap.user}") from e
        except ValueError as e:
            # imaplib sends LOGIN arguments as ASCII
            self._logout_quietly(conn)
            raise AuthenticationError(f"Credentials for {imap.user} are not ASCII; LOGIN cannot send them") from e
        except OSError as e:
            self._logout_quietly(conn)
            raise NetworkError(f"Network failure during login: {e}") from e

        if self._closed:
            # close() ran while login was still in flight
            self._logout_quietly(conn)
            raise NetworkError("Transport closed during connect")
        self._conn = conn

    async def select(self, mailbox: str) -> int:
        typ, data = await self._call("select", mailbox, readonly=True)
        if typ != "OK":
            raise NetworkError(f"Cannot open mailbox {mailbox}: {data}")
        try:
            self._exists = int(data[0])
        except (TypeError, ValueError, IndexError):
            self._exists = 0
        return self._exists

    async def search_since(self, since: date) -> list[str]:
        return await self._uid_search("SINCE", imap_date(since))

    async def search_unseen(self) -> list[str]:
        return await self._uid_search("UNSEEN")

    async def _uid_search(self, *criteria: str) -> list[str]:
        typ, data = await self._call("uid", "SEARCH", None, *criteria)
        if typ != "OK":
            raise NetworkError(f"SEARCH {' '.join(criteria)} failed: {data}")
        if not data or not data[0]:
            return []
        return [uid.decode() for uid in data[0].split()]

    async def fetch(self, uid: str) -> bytes:
        typ, data = await self._call("uid", "FETCH", uid, "(BODY.PEEK[])")
        if typ != "OK":
            raise ParseError(f"FETCH failed: {data}", uid=uid)
        for item in data or []:
            if isinstance(item, tuple) and len(item) >= 2 and isinstance(item[1], bytes):
                return item[1]
        raise ParseError("FETCH returned no message body", uid=uid)

    async def wait_for_new_mail(self, timeout: float) -> Optional[int]:
        conn = self._require_conn()
        if "IDLE" in conn.capabilities:
            return await asyncio.to_thread(self._idle_sync, conn, timeout)
        return await asyncio.to_thread(self._poll_sync, conn, timeout)

    async def close(self) -> None:
        self._closed = True
        conn, self._conn = self._conn, None
        if conn is not None:
            await asyncio.to_thread(self._logout_quietly, conn)

    # ------------------------------------------------------------------
    def _require_conn(self) -> imaplib.IMAP4:
        if self._conn is None:
            raise NetworkError("IMAP session is not open")
        return self._conn

    async def _call(self, method: str, *args, **kwargs):
        conn = self._require_conn()
        try:
            return await asyncio.to_thread(getattr(conn, method), *args, **kwargs)
        except (imaplib.IMAP4.abort, OSError) as e:
            raise NetworkError(f"IMAP {method} failed: {e}") from e
        except imaplib.IMAP4.error as e:
            raise NetworkError(f"IMAP {method} rejected: {e}") from e

    def _idle_sync(self, conn: imaplib.IMAP4, timeout: float) -> Optional[int]:
        """Run one IDLE cycle, returning the first EXISTS count or None on timeout."""
        count: Optional[int] = None
        try:
            tag = conn._new_tag()
            conn.send(tag + b" IDLE\r\n")
            line = self._readline(conn)
            if not line.startswith(b"+"):
                raise NetworkError(f"Server refused IDLE: {line!r}")

            deadline = time.monotonic() + timeout
            while count is None:
                remaining = deadline - time.monotonic()
                if remaining <= 0 or not self._readable(conn, remaining):
                    break
                count = self._exists_count(self._readline(conn))

            conn.send(b"DONE\r\n")
            while True:
                line = self._readline(conn)
                if line.startswith(tag):
                    break
                if count is None:
                    count = self._exists_count(line)
        except (OSError, imaplib.IMAP4.error) as e:
            raise NetworkError(f"IDLE failed: {e}") from e

        if count is not None:
            self._exists = count
        return count

    def _poll_sync(self, conn: imaplib.IMAP4, timeout: float) -> Optional[int]:
        time.sleep(min(timeout, self.poll_interval))
        try:
            conn.noop()
            _, data = conn.response("EXISTS")
        except (OSError, imaplib.IMAP4.error) as e:
            raise NetworkError(f"NOOP failed: {e}") from e
        counts = [int(d) for d in data or [] if d]
        if not counts or counts[-1] == self._exists:
            return None
        self._exists = counts[-1]
        return self._exists

    @staticmethod
    def _readline(conn: imaplib.IMAP4) -> bytes:
        line = conn.readline()
        if not line:
            raise NetworkError("Server closed the connection")
        return line

    @staticmethod
    def _readable(conn: imaplib.IMAP4, timeout: float) -> bool:
        sock = conn.sock
        if isinstance(sock, ssl.SSLSocket) and sock.pending():
            return True
        try:
            ready, _, _ = select.select([sock], [], [], timeout)
        except (OSError, ValueError):
            raise NetworkError("Socket closed while idling")
        return bool(ready)

    @staticmethod
    def _exists_count(line: bytes) -> Optional[int]:
        match = _EXISTS_RE.match(line)
        return int(match.group(1)) if match else None

    @staticmethod
    def _logout_quietly(conn: imaplib.IMAP4) -> None:
        try:
            conn.logout()
        except (OSError, imaplib.IMAP4.error) as e:
            logger.debug("IMAP logout failed", error=str(e))
