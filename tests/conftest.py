"""Pytest configuration and fixtures for all tests."""

import asyncio
import os
from datetime import date, datetime, timedelta, timezone
from email.message import EmailMessage
from email.utils import format_datetime
from typing import Optional, Union

import pytest

# Set test environment variables before importing settings
TEST_ENCRYPTION_KEY = "YWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWE="

os.environ["APP_ENV"] = "testing"
os.environ["LOG_FORMAT"] = "console"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["EMAIL_ENCRYPTION_KEY"] = TEST_ENCRYPTION_KEY
os.environ["REDIS_URL"] = "redis://localhost:6379/1"
os.environ["ELASTICSEARCH_NODE"] = "http://es.test:9200"
os.environ["OPENAI_API_KEY"] = "test-openai-key"
os.environ["SLACK_BOT_TOKEN"] = ""
os.environ["SLACK_CHANNEL_ID"] = ""
os.environ["WEBHOOK_URL"] = ""

from mailsync.config.settings import settings  # noqa: E402
from mailsync.exceptions import NetworkError, ParseError  # noqa: E402
from mailsync.models.account import Account, ImapSettings  # noqa: E402
from mailsync.models.email import CanonicalMessage, EmailAddress  # noqa: E402
from mailsync.services.mailbox_transport import MailboxTransport  # noqa: E402
from mailsync.utils.crypto import CredentialCipher  # noqa: E402


def build_raw_message(
    subject: Optional[str] = "Hello",
    message_id: Optional[str] = "<msg-1@example.com>",
    sender: Optional[str] = "Alice Example <alice@example.com>",
    to: str = "bob@example.com",
    cc: Optional[str] = None,
    body: str = "Plain text body",
    html: Optional[str] = None,
    sent_at: Optional[datetime] = None,
    attachment: Optional[tuple[str, bytes]] = None,
) -> bytes:
    """Build RFC 822 bytes the way a mail server would return them."""
    msg = EmailMessage()
    if sender is not None:
        msg["From"] = sender
    msg["To"] = to
    if cc:
        msg["Cc"] = cc
    if subject is not None:
        msg["Subject"] = subject
    if message_id is not None:
        msg["Message-ID"] = message_id
    msg["Date"] = format_datetime(sent_at or datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc))
    msg.set_content(body)
    if html is not None:
        msg.add_alternative(html, subtype="html")
    if attachment is not None:
        filename, data = attachment
        msg.add_attachment(data, maintype="application", subtype="pdf", filename=filename)
    return msg.as_bytes()


MALFORMED_RAW_MESSAGE = (
    b"From: broken@example.com\r\n"
    b"To: bob@example.com\r\n"
    b"Subject: Broken charset\r\n"
    b"Message-ID: <broken@example.com>\r\n"
    b'Content-Type: text/plain; charset="x-no-such-charset"\r\n'
    b"\r\n"
    b"cannot decode me\r\n"
)


class FakeTransport(MailboxTransport):
    """
    In-memory mailbox standing in for an IMAP server.

    ``open_errors`` is consumed one entry per ``open()`` call; ``None``
    entries (or an exhausted list) mean success. ``new_mail`` feeds
    ``wait_for_new_mail``: ints are EXISTS counts, exceptions are raised.
    """

    def __init__(self) -> None:
        self.messages: dict[str, tuple[date, bytes, bool]] = {}
        self.open_errors: list[Optional[Exception]] = []
        self.always_fail: Optional[Exception] = None
        self.open_gate: Optional[asyncio.Event] = None
        self.new_mail: asyncio.Queue = asyncio.Queue()
        self.open_calls = 0
        self.close_calls = 0
        self.fetched: list[str] = []
        self.passwords: list[str] = []
        self.is_open = False

    def add_message(
        self, uid: Union[int, str], raw: bytes, received: Optional[date] = None, seen: bool = False
    ) -> None:
        received = received or datetime.now(timezone.utc).date()
        self.messages[str(uid)] = (received, raw, seen)

    async def open(self, imap: ImapSettings, password: str) -> None:
        self.open_calls += 1
        self.passwords.append(password)
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.always_fail is not None:
            raise self.always_fail
        if self.open_errors:
            error = self.open_errors.pop(0)
            if error is not None:
                raise error
        self.is_open = True

    async def select(self, mailbox: str) -> int:
        return len(self.messages)

    async def search_since(self, since: date) -> list[str]:
        return [uid for uid, (received, _, _) in self.messages.items() if received >= since]

    async def search_unseen(self) -> list[str]:
        return [uid for uid, (_, _, seen) in self.messages.items() if not seen]

    async def fetch(self, uid: str) -> bytes:
        self.fetched.append(uid)
        if uid not in self.messages:
            raise ParseError("no such message", uid=uid)
        return self.messages[uid][1]

    async def wait_for_new_mail(self, timeout: float) -> Optional[int]:
        try:
            item = await asyncio.wait_for(self.new_mail.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.close_calls += 1
        self.is_open = False


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher(TEST_ENCRYPTION_KEY)


@pytest.fixture
def make_account(cipher):
    def _make(account_id: str = "acct-1", email: str = "alice@example.com", active: bool = True) -> Account:
        return Account(
            id=account_id,
            email=email,
            imap=ImapSettings(
                host="imap.example.com",
                port=993,
                secure=True,
                user=email,
                password_ciphertext=cipher.encrypt("s3cret"),
            ),
            is_active=active,
        )

    return _make


@pytest.fixture
def account(make_account) -> Account:
    return make_account()


@pytest.fixture
def sync_config():
    """Sync policy with delays short enough for tests."""
    return settings.sync.model_copy(
        update={
            "reconnect_base_delay": 0.01,
            "reconnect_max_delay": 0.03,
            "max_reconnect_attempts": 3,
            "connect_timeout": 1.0,
            "idle_timeout": 0.05,
            "account_queue_size": 100,
            "event_queue_size": 1000,
        }
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def sample_message() -> CanonicalMessage:
    return CanonicalMessage(
        message_id="<msg-1@example.com>",
        account_id="acct-1",
        sender=EmailAddress(email="alice@example.com", name="Alice Example"),
        to=[EmailAddress(email="bob@example.com")],
        subject="Interested in a demo",
        body="Hi, we would love to see a demo next week.",
        date=datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc),
    )


@pytest.fixture
def network_error() -> NetworkError:
    return NetworkError("connection refused")


def days_ago(days: int) -> date:
    return (datetime.now(timezone.utc) - timedelta(days=days)).date()


async def drain_events(queue: asyncio.Queue, timeout: float = 0.2) -> list:
    """Collect queued events until nothing arrives for ``timeout`` seconds."""
    events = []
    while True:
        try:
            events.append(await asyncio.wait_for(queue.get(), timeout=timeout))
        except asyncio.TimeoutError:
            return events


@pytest.fixture
def raw_message():
    """Factory building RFC 822 bytes (see ``build_raw_message``)."""
    return build_raw_message


@pytest.fixture
def malformed_raw() -> bytes:
    return MALFORMED_RAW_MESSAGE


@pytest.fixture
def drain():
    return drain_events


@pytest.fixture
def received_days_ago():
    return days_ago


@pytest.fixture
def transports() -> dict[str, FakeTransport]:
    """Per-account fake mailboxes, created on first connect."""
    return {}


@pytest.fixture
def transport_factory(transports):
    def _factory(account: Account) -> FakeTransport:
        return transports.setdefault(account.id, FakeTransport())

    return _factory
