"""Canonical message models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def document_id_for(account_id: str, message_id: str) -> str:
    """Index document id of a message: unique per account, stable across re-delivery."""
    return f"{account_id}:{message_id}"


class EmailCategory(str, Enum):
    """Classification labels assigned by the processing pipeline."""

    INTERESTED = "interested"
    MEETING_BOOKED = "meeting_booked"
    NOT_INTERESTED = "not_interested"
    SPAM = "spam"
    OUT_OF_OFFICE = "out_of_office"
    UNCATEGORIZED = "uncategorized"


class EmailAddress(BaseModel):
    """Mailbox address with optional display name."""

    email: str = ""
    name: Optional[str] = None

    @property
    def display(self) -> str:
        return self.name or self.email


class AttachmentSummary(BaseModel):
    """Attachment metadata. Binary content never leaves the normalizer."""

    filename: str
    content_type: str = "application/octet-stream"
    size: int = 0


class CanonicalMessage(BaseModel):
    """Normalized message record, independent of the IMAP wire format."""

    message_id: str
    account_id: str
    sender: EmailAddress = Field(default_factory=EmailAddress)
    to: list[EmailAddress] = Field(default_factory=list)
    cc: Optional[list[EmailAddress]] = None
    subject: str
    body: str = ""
    html_body: Optional[str] = None
    date: datetime
    folder: str = "INBOX"
    is_read: bool = False
    # None (not []) when the message has no attachments
    attachments: Optional[list[AttachmentSummary]] = None
    category: Optional[EmailCategory] = None
    headers: dict[str, str] = Field(default_factory=dict)

    @property
    def has_attachments(self) -> bool:
        return self.attachments is not None

    @property
    def dedup_key(self) -> tuple[str, str]:
        """Natural key; re-delivery of the same key is an upsert."""
        return (self.account_id, self.message_id)

    @property
    def document_id(self) -> str:
        return document_id_for(self.account_id, self.message_id)

    def index_document(self) -> dict[str, Any]:
        """Build the document sent to the index store."""
        now = datetime.now(timezone.utc).isoformat()
        document = self.model_dump(mode="json")
        document["has_attachments"] = self.has_attachments
        document["created_at"] = now
        document["updated_at"] = now
        return document
