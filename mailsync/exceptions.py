"""Error taxonomy for the synchronization engine and its collaborators."""

from typing import Optional


class MailSyncError(Exception):
    """Base class for all recoverable mailsync errors."""

    pass


class ConnectionFailure(MailSyncError):
    """Connection-level failure; triggers the reconnect policy."""

    pass


class AuthenticationError(ConnectionFailure):
    """Mail server rejected the account credentials."""

    pass


class NetworkError(ConnectionFailure):
    """Mail server unreachable, timed out, or dropped the session."""

    pass


class ParseError(MailSyncError):
    """A single fetched message could not be parsed or normalized."""

    def __init__(self, message: str, uid: Optional[str] = None) -> None:
        super().__init__(message)
        self.uid = uid


class UnknownAccountError(MailSyncError):
    """No connection is registered for the account identifier."""

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id


class DecryptionError(MailSyncError):
    """Stored credential ciphertext could not be decrypted."""

    pass


class ExternalServiceError(MailSyncError):
    """Index, classification or notification collaborator failed."""

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service


class InvalidStateTransition(MailSyncError):
    """Connection state machine was asked for a transition it does not allow."""

    pass
