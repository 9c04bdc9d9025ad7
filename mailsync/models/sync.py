"""Connection state, sync status and coordinator event models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field

from .email import CanonicalMessage


class ConnectionState(str, Enum):
    """Mailbox connection lifecycle states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    LIVE = "live"  # backfilled or backfilling, watching for new mail
    ERROR = "error"


class SyncEventType(str, Enum):
    """Event kinds on the coordinator's outward stream."""

    MESSAGE = "message"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    EXHAUSTED = "exhausted"


class SyncEvent(BaseModel):
    """One entry of the aggregated event stream."""

    type: SyncEventType
    account_id: str
    payload: Optional[Union[CanonicalMessage, str]] = None
    # connection session the event was produced under; bumped by every disconnect
    session: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SyncStatus(BaseModel):
    """Per-account sync status, mutated only by the coordinator."""

    account_id: str
    is_connected: bool = False
    emails_synced: int = 0
    last_sync: Optional[datetime] = None
    error: Optional[str] = None
