"""Mailbox account models."""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ImapSettings(BaseModel):
    """IMAP connection parameters. The password is ciphertext."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    host: str
    port: int = 993
    secure: bool = True
    user: str
    password_ciphertext: str = Field(alias="passwordCiphertext")


class Account(BaseModel):
    """Read-only snapshot of an externally owned mailbox account."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    email: str
    imap: ImapSettings
    is_active: bool = Field(default=True, alias="isActive")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="createdAt"
    )

    def public_view(self) -> dict[str, Any]:
        """Account fields safe to expose; the credential is omitted."""
        data = self.model_dump(mode="json", by_alias=True)
        data["imap"].pop("passwordCiphertext", None)
        return data
