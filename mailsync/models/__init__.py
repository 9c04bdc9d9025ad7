"""Data models for the mailbox synchronization engine."""

from .email import AttachmentSummary, CanonicalMessage, EmailAddress, EmailCategory
from .account import Account, ImapSettings
from .sync import ConnectionState, SyncEvent, SyncEventType, SyncStatus

__all__ = [
    "AttachmentSummary",
    "CanonicalMessage",
    "EmailAddress",
    "EmailCategory",
    "Account",
    "ImapSettings",
    "ConnectionState",
    "SyncEvent",
    "SyncEventType",
    "SyncStatus",
]
