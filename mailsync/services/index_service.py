"""Elasticsearch message index (REST over httpx) with retry and circuit breaker."""

from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import Lock
from typing import Any, Optional
from urllib.parse import quote

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mailsync.config.settings import ElasticsearchConfig, settings
from mailsync.exceptions import ExternalServiceError
from mailsync.models.email import CanonicalMessage
from mailsync.utils.logging import get_logger

logger = get_logger(__name__)

SERVICE = "elasticsearch"

# Attachment content never reaches the index, only its metadata
INDEX_MAPPINGS: dict[str, Any] = {
    "properties": {
        "message_id": {"type": "keyword"},
        "account_id": {"type": "keyword"},
        "sender": {
            "properties": {"email": {"type": "keyword"}, "name": {"type": "text"}}
        },
        "to": {
            "properties": {"email": {"type": "keyword"}, "name": {"type": "text"}}
        },
        "cc": {
            "properties": {"email": {"type": "keyword"}, "name": {"type": "text"}}
        },
        "subject": {"type": "text"},
        "body": {"type": "text"},
        "html_body": {"type": "text", "index": False},
        "date": {"type": "date"},
        "folder": {"type": "keyword"},
        "is_read": {"type": "boolean"},
        "category": {"type": "keyword"},
        "has_attachments": {"type": "boolean"},
        "attachments": {
            "properties": {
                "filename": {"type": "keyword"},
                "content_type": {"type": "keyword"},
                "size": {"type": "long"},
            }
        },
        "headers": {"type": "object", "enabled": False},
        "created_at": {"type": "date"},
        "updated_at": {"type": "date"},
    }
}


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if service recovered


class IndexUnavailableError(ExternalServiceError):
    """Transient index failure (timeout, connection refused, 5xx, 429)."""

    def __init__(self, message: str) -> None:
        super().__init__(SERVICE, message)


class CircuitOpenError(ExternalServiceError):
    """Circuit breaker is open, request rejected without calling the index."""

    def __init__(self, message: str) -> None:
        super().__init__(SERVICE, message)


class CircuitBreaker:
    """
    Circuit breaker guarding the index store.

    States:
    - CLOSED: requests pass through, consecutive failures are counted
    - OPEN: threshold exceeded, requests rejected until ``timeout_seconds`` pass
    - HALF_OPEN: a limited number of trial requests decide recovery
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout_seconds: int = 60,
        half_open_max_calls: int = 3,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.timeout_seconds = timeout_seconds
        self.half_open_max_calls = half_open_max_calls

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._half_open_calls = 0
        self._lock = Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def _transition(self, new_state: CircuitState, reason: str) -> None:
        old_state, self._state = self._state, new_state
        logger.warning(
            "Index circuit breaker state transition",
            old_state=old_state.value,
            new_state=new_state.value,
            reason=reason,
            failure_count=self._failure_count,
        )

    def _recovery_due(self) -> bool:
        if self._last_failure_time is None:
            return False
        elapsed = datetime.now(timezone.utc) - self._last_failure_time
        return elapsed >= timedelta(seconds=self.timeout_seconds)

    def before_call(self) -> None:
        """
        Admit or reject a call.

        Raises:
            CircuitOpenError: If the circuit is open or half-open trials are used up
        """
        with self._lock:
            if self._state is CircuitState.OPEN and self._recovery_due():
                self._transition(CircuitState.HALF_OPEN, "Timeout elapsed, testing recovery")
                self._half_open_calls = 0

            if self._state is CircuitState.CLOSED:
                return

            if self._state is CircuitState.HALF_OPEN:
                if self._half_open_calls < self.half_open_max_calls:
                    self._half_open_calls += 1
                    return
                raise CircuitOpenError("Circuit half-open, trial calls exhausted")

            remaining = self.timeout_seconds
            if self._last_failure_time is not None:
                elapsed = (datetime.now(timezone.utc) - self._last_failure_time).total_seconds()
                remaining = max(0, self.timeout_seconds - elapsed)
            raise CircuitOpenError(f"Circuit open, retry in {remaining:.0f}s")

    def record_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED, "Recovery successful")
                self._last_failure_time = None
            self._failure_count = 0

    def record_failure(self, error: Exception) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.now(timezone.utc)

            if self._state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN, "Failure during recovery test")
            elif (
                self._state is CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                self._transition(
                    CircuitState.OPEN,
                    f"Failure threshold reached ({self._failure_count}/{self.failure_threshold})",
                )

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
            self._half_open_calls = 0


class IndexService:
    """
    Message index backed by Elasticsearch.

    Documents are keyed by ``{account_id}:{message_id}``, so indexing the
    same message twice overwrites it (idempotent upsert).
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        config: Optional[ElasticsearchConfig] = None,
        failure_threshold: int = 5,
        circuit_timeout: int = 60,
    ) -> None:
        self.config = config or settings.elasticsearch
        self.base_url = self.config.node.rstrip("/")
        self.index = self.config.index
        self._client = client
        self._owns_client = client is None
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=failure_threshold,
            timeout_seconds=circuit_timeout,
        )

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
            self._owns_client = True
        logger.info("Index service ready", node=self.base_url, index=self.index)

    async def disconnect(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
            self._owns_client = True
        return self._client

    def _doc_url(self, document_id: str) -> str:
        return f"{self.base_url}/{self.index}/_doc/{quote(document_id, safe='')}"

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Send one request with retries for transient failures.

        404 responses are returned to the caller; other 4xx raise
        ``ExternalServiceError`` immediately without retry.
        """
        self.circuit_breaker.before_call()

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.max_retries),
                wait=wait_exponential(multiplier=self.config.retry_wait_seconds, max=30),
                retry=retry_if_exception_type(IndexUnavailableError),
                reraise=True,
            ):
                with attempt:
                    response = await self._send(method, url, **kwargs)
        except IndexUnavailableError as e:
            self.circuit_breaker.record_failure(e)
            logger.error("Index request failed after retries", method=method, url=url, error=str(e))
            raise

        self.circuit_breaker.record_success()
        return response

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise IndexUnavailableError(f"Timeout: {e}") from e
        except httpx.TransportError as e:
            raise IndexUnavailableError(f"Connection failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning("Transient index error", status=response.status_code, url=url)
            raise IndexUnavailableError(f"HTTP {response.status_code}")
        if response.status_code >= 400 and response.status_code != 404:
            raise ExternalServiceError(
                SERVICE, f"HTTP {response.status_code}: {response.text[:200]}"
            )
        return response

    async def ensure_index(self) -> bool:
        """Create the index with its mappings if missing. Returns True if created."""
        response = await self._request("HEAD", f"{self.base_url}/{self.index}")
        if response.status_code != 404:
            return False
        await self._request(
            "PUT", f"{self.base_url}/{self.index}", json={"mappings": INDEX_MAPPINGS}
        )
        logger.info("Index created", index=self.index)
        return True

    async def index_message(self, message: CanonicalMessage) -> str:
        """
        Index (upsert) one message.

        Returns:
            Document id

        Raises:
            ExternalServiceError: If the index store rejected or never accepted it
        """
        document_id = message.document_id
        response = await self._request(
            "PUT", self._doc_url(document_id), json=message.index_document()
        )
        if response.status_code == 404:
            raise ExternalServiceError(SERVICE, f"Index {self.index} not found")

        indexed_id = response.json().get("_id", document_id)
        logger.info(
            "Message indexed",
            document_id=indexed_id,
            account_id=message.account_id,
            category=message.category.value if message.category else None,
        )
        return indexed_id

    async def get_message(self, document_id: str) -> Optional[CanonicalMessage]:
        response = await self._request("GET", self._doc_url(document_id))
        if response.status_code == 404:
            return None
        source = response.json().get("_source")
        if not source:
            return None
        return CanonicalMessage.model_validate(source)

    async def delete_message(self, document_id: str) -> bool:
        """Delete a document. Returns False if it did not exist."""
        response = await self._request("DELETE", self._doc_url(document_id))
        if response.status_code == 404:
            return False
        logger.info("Message deleted", document_id=document_id)
        return True

    async def check_health(self) -> bool:
        """Cluster reachable and not red. Never raises."""
        try:
            response = await self.client.get(f"{self.base_url}/_cluster/health", timeout=5.0)
        except httpx.HTTPError as e:
            logger.warning("Index health check failed", error=str(e))
            return False
        if response.status_code != 200:
            return False
        return response.json().get("status") in ("green", "yellow")
