"""
Raw IMAP message to canonical message conversion.

Pure functions: no I/O, no logging. The same input always yields the same
``CanonicalMessage`` except when the source carries no Message-ID, in which
case a time-plus-random identifier is synthesized.
"""

import random
import time
from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime
from typing import Optional

from mailsync.exceptions import ParseError
from mailsync.models.email import AttachmentSummary, CanonicalMessage, EmailAddress
from mailsync.utils.html_text import html_to_text

NO_SUBJECT = "(No Subject)"
DEFAULT_FOLDER = "INBOX"


def parse_raw_message(raw: bytes) -> EmailMessage:
    """
    Parse RFC 822 bytes into an ``EmailMessage``.

    Raises:
        ParseError: If the payload is empty or cannot be parsed
    """
    if not raw:
        raise ParseError("Empty message payload")
    try:
        return BytesParser(policy=policy.default).parsebytes(raw)
    except Exception as e:
        raise ParseError(f"Unparseable message: {e}") from e


def synthesize_message_id() -> str:
    """Collision-avoidant identifier for messages without a Message-ID."""
    return f"{int(time.time() * 1000)}-{random.getrandbits(48):012x}"


def _addresses(value: Optional[str]) -> list[EmailAddress]:
    if not value:
        return []
    return [
        EmailAddress(email=addr or "", name=name or None)
        for name, addr in getaddresses([value])
        if addr or name
    ]


def _header(parsed: EmailMessage, name: str) -> Optional[str]:
    try:
        value = parsed.get(name)
    except Exception:
        return None
    return str(value) if value is not None else None


def _message_date(parsed: EmailMessage, fallback: datetime) -> datetime:
    raw_date = _header(parsed, "Date")
    if not raw_date:
        return fallback
    try:
        value = parsedate_to_datetime(raw_date)
    except (TypeError, ValueError, IndexError):
        return fallback
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _part_text(part: Optional[EmailMessage]) -> Optional[str]:
    if part is None:
        return None
    try:
        return part.get_content()
    except (LookupError, UnicodeError) as e:
        raise ParseError(f"Undecodable {part.get_content_type()} body: {e}") from e


def _attachments(parsed: EmailMessage) -> Optional[list[AttachmentSummary]]:
    summaries = []
    for part in parsed.iter_attachments():
        payload = part.get_payload(decode=True) or b""
        summaries.append(
            AttachmentSummary(
                filename=part.get_filename() or "unknown",
                content_type=part.get_content_type() or "application/octet-stream",
                size=len(payload),
            )
        )
    return summaries or None


def _header_bag(parsed: EmailMessage) -> dict[str, str]:
    bag: dict[str, str] = {}
    for name in parsed.keys():
        key = name.lower()
        if key in bag:
            continue
        values = []
        for value in parsed.get_all(name, []):
            try:
                values.append(str(value))
            except Exception:
                continue
        bag[key] = "\n".join(values)
    return bag


def normalize_message(
    parsed: EmailMessage,
    account_id: str,
    folder: str = DEFAULT_FOLDER,
    fallback_date: Optional[datetime] = None,
) -> CanonicalMessage:
    """
    Convert a parsed message into a ``CanonicalMessage``.

    Args:
        parsed: Message parsed with ``parse_raw_message``
        account_id: Owning account identifier
        folder: Source folder name
        fallback_date: Timestamp used when the Date header is missing or invalid

    Returns:
        Canonical message record. Attachment binaries are reduced to
        filename, content type and byte size.

    Raises:
        ParseError: If a body part cannot be decoded
    """
    if fallback_date is None:
        fallback_date = datetime.fromtimestamp(0, tz=timezone.utc)

    senders = _addresses(_header(parsed, "From"))
    sender = senders[0] if senders else EmailAddress()

    cc_header = _header(parsed, "Cc")
    cc = _addresses(cc_header) if cc_header else None

    body_part = parsed.get_body(preferencelist=("plain",))
    html_part = parsed.get_body(preferencelist=("html",))
    text = _part_text(body_part)
    html = _part_text(html_part)
    if text is None and html is not None:
        text = html_to_text(html)

    message_id = (_header(parsed, "Message-ID") or "").strip()
    subject = (_header(parsed, "Subject") or "").strip()

    return CanonicalMessage(
        message_id=message_id or synthesize_message_id(),
        account_id=account_id,
        sender=sender,
        to=_addresses(_header(parsed, "To")),
        cc=cc,
        subject=subject or NO_SUBJECT,
        body=text or "",
        html_body=html or None,
        date=_message_date(parsed, fallback_date),
        folder=folder,
        is_read=False,
        attachments=_attachments(parsed),
        headers=_header_bag(parsed),
    )


def normalize_raw_message(
    raw: bytes,
    account_id: str,
    folder: str = DEFAULT_FOLDER,
    fallback_date: Optional[datetime] = None,
) -> CanonicalMessage:
    """Parse and normalize in one step."""
    return normalize_message(parse_raw_message(raw), account_id, folder, fallback_date)
