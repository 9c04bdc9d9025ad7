"""API request/response models."""

from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import AnyHttpUrl, BaseModel, Field

from mailsync.models.email import CanonicalMessage
from mailsync.models.sync import SyncStatus


class ImapCreateRequest(BaseModel):
    """IMAP parameters supplied when an account is created. Password is plaintext here only."""

    host: str = Field(min_length=1)
    port: int = Field(default=993, ge=1, le=65535)
    secure: bool = True
    user: str = Field(min_length=1)
    password: str = Field(min_length=1)


class AccountCreateRequest(BaseModel):
    """Body of ``POST /accounts``."""

    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+$")
    imap: ImapCreateRequest
    is_active: bool = Field(default=True, alias="isActive")
    start_sync: bool = Field(default=True, description="Register and start syncing immediately")

    model_config = {"populate_by_name": True}


class AccountResponse(BaseModel):
    success: bool = True
    data: dict[str, Any]


class AccountListResponse(BaseModel):
    success: bool = True
    data: list[dict[str, Any]]
    count: int


class SyncRequest(BaseModel):
    """Body of the single-account sync control endpoints."""

    account_id: str = Field(min_length=1, alias="accountId")

    model_config = {"populate_by_name": True}


class SyncActionResponse(BaseModel):
    success: bool = True
    message: str
    account_id: Optional[str] = None


class SyncStatusResponse(BaseModel):
    success: bool = True
    data: Optional[Union[SyncStatus, list[SyncStatus]]] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class IntegrationStatusResponse(BaseModel):
    success: bool = True
    data: dict[str, bool]


class WebhookUrlRequest(BaseModel):
    """Body of ``POST /integrations/webhook/url``."""

    url: AnyHttpUrl


class IntegrationActionResponse(BaseModel):
    success: bool = True
    message: str


class MessageResponse(BaseModel):
    success: bool = True
    data: CanonicalMessage
