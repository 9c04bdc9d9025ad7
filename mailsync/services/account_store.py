"""Redis-backed account store holding encrypted IMAP credentials."""

import uuid
from typing import Optional

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from mailsync.config.settings import RedisConfig, settings
from mailsync.exceptions import ExternalServiceError
from mailsync.models.account import Account, ImapSettings
from mailsync.utils.crypto import CredentialCipher
from mailsync.utils.logging import get_logger

logger = get_logger(__name__)

SERVICE = "redis"


class AccountStore:
    """
    Account documents stored as JSON under ``{prefix}{id}``.

    Passwords are encrypted with ``CredentialCipher`` before they are
    written; plaintext never reaches Redis.
    """

    def __init__(
        self,
        cipher: Optional[CredentialCipher] = None,
        redis_client: Optional[aioredis.Redis] = None,
        config: Optional[RedisConfig] = None,
    ) -> None:
        self.config = config or settings.redis
        self.prefix = self.config.account_prefix
        self.redis: Optional[aioredis.Redis] = redis_client
        self._cipher = cipher

    @property
    def cipher(self) -> CredentialCipher:
        if self._cipher is None:
            self._cipher = CredentialCipher()
        return self._cipher

    async def connect(self) -> None:
        """Connect to Redis."""
        self.redis = await aioredis.from_url(self.config.url, decode_responses=True)
        logger.info("Connected to Redis")

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            logger.info("Disconnected from Redis")

    async def _client(self) -> aioredis.Redis:
        if not self.redis:
            await self.connect()
        return self.redis

    def _key(self, account_id: str) -> str:
        return f"{self.prefix}{account_id}"

    async def ping(self) -> bool:
        try:
            client = await self._client()
            return bool(await client.ping())
        except (RedisError, OSError) as e:
            logger.warning("Redis ping failed", error=str(e))
            return False

    async def get_account(self, account_id: str) -> Optional[Account]:
        try:
            client = await self._client()
            data = await client.get(self._key(account_id))
        except RedisError as e:
            raise ExternalServiceError(SERVICE, f"Cannot read account {account_id}: {e}") from e

        if not data:
            return None
        return Account.model_validate_json(data)

    async def list_accounts(self, active_only: bool = False) -> list[Account]:
        """
        Every stored account. Malformed documents are skipped with an error log.
        """
        accounts: list[Account] = []
        try:
            client = await self._client()
            async for key in client.scan_iter(match=f"{self.prefix}*", count=100):
                data = await client.get(key)
                if not data:
                    continue
                try:
                    account = Account.model_validate_json(data)
                except ValidationError as e:
                    logger.error("Malformed account document", key=key, error=str(e))
                    continue
                if active_only and not account.is_active:
                    continue
                accounts.append(account)
        except RedisError as e:
            raise ExternalServiceError(SERVICE, f"Cannot list accounts: {e}") from e

        logger.debug("Accounts loaded", count=len(accounts), active_only=active_only)
        return accounts

    async def save_account(self, account: Account) -> None:
        try:
            client = await self._client()
            await client.set(self._key(account.id), account.model_dump_json(by_alias=True))
        except RedisError as e:
            raise ExternalServiceError(SERVICE, f"Cannot save account {account.id}: {e}") from e
        logger.info("Account saved", account_id=account.id, email=account.email)

    async def delete_account(self, account_id: str) -> bool:
        try:
            client = await self._client()
            deleted = await client.delete(self._key(account_id))
        except RedisError as e:
            raise ExternalServiceError(SERVICE, f"Cannot delete account {account_id}: {e}") from e
        if deleted:
            logger.info("Account deleted", account_id=account_id)
        return bool(deleted)

    async def create_account(
        self,
        email: str,
        host: str,
        user: str,
        password: str,
        port: int = 993,
        secure: bool = True,
        is_active: bool = True,
        account_id: Optional[str] = None,
    ) -> Account:
        """Encrypt the password, build the account and persist it."""
        account = Account(
            id=account_id or str(uuid.uuid4()),
            email=email,
            imap=ImapSettings(
                host=host,
                port=port,
                secure=secure,
                user=user,
                password_ciphertext=self.cipher.encrypt(password),
            ),
            is_active=is_active,
        )
        await self.save_account(account)
        return account
