"""
Unit tests for IndexService

Uses httpx.MockTransport in place of an Elasticsearch node.
"""
import json

import httpx
import pytest

from mailsync.config.settings import settings
from mailsync.exceptions import ExternalServiceError
from mailsync.models.email import EmailCategory
from mailsync.services.index_service import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    IndexService,
    IndexUnavailableError,
)


class RecordingHandler:
    """Replays queued responses and records every request."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


@pytest.fixture
def es_config():
    return settings.elasticsearch.model_copy(
        update={"node": "http://es.test:9200", "index": "emails", "max_retries": 3, "retry_wait_seconds": 0}
    )


def make_service(handler: RecordingHandler, config, **kwargs) -> IndexService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return IndexService(client=client, config=config, **kwargs)


@pytest.mark.unit
class TestIndexMessage:
    """Upsert of a single message"""

    @pytest.mark.asyncio
    async def test_index_uses_account_scoped_document_id(self, es_config, sample_message):
        """
        Given: A categorized message
        When: It is indexed
        Then: A PUT is sent to the document keyed by account id and message id
        """
        handler = RecordingHandler(
            httpx.Response(201, json={"_id": "acct-1:<msg-1@example.com>", "result": "created"})
        )
        service = make_service(handler, es_config)
        message = sample_message.model_copy(update={"category": EmailCategory.INTERESTED})

        document_id = await service.index_message(message)

        assert document_id == "acct-1:<msg-1@example.com>"
        request = handler.requests[0]
        assert request.method == "PUT"
        assert request.url.path == "/emails/_doc/acct-1:<msg-1@example.com>"
        body = json.loads(request.content)
        assert body["category"] == "interested"
        assert body["has_attachments"] is False
        assert "created_at" in body

    @pytest.mark.asyncio
    async def test_reindexing_is_an_upsert(self, es_config, sample_message):
        handler = RecordingHandler(httpx.Response(200, json={"_id": "x", "result": "updated"}))
        service = make_service(handler, es_config)

        await service.index_message(sample_message)
        await service.index_message(sample_message)

        assert [r.url.path for r in handler.requests] == [handler.requests[0].url.path] * 2

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, es_config, sample_message):
        """
        Given: An index that answers 503 twice and then succeeds
        When: A message is indexed
        Then: The call succeeds after three attempts
        """
        handler = RecordingHandler(
            httpx.Response(503),
            httpx.Response(503),
            httpx.Response(201, json={"_id": "acct-1:<msg-1@example.com>"}),
        )
        service = make_service(handler, es_config)

        assert await service.index_message(sample_message) == "acct-1:<msg-1@example.com>"
        assert len(handler.requests) == 3
        assert service.circuit_breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_persistent_unavailability_raises(self, es_config, sample_message):
        handler = RecordingHandler(httpx.Response(503))
        service = make_service(handler, es_config)

        with pytest.raises(ExternalServiceError):
            await service.index_message(sample_message)
        assert len(handler.requests) == es_config.max_retries

    @pytest.mark.asyncio
    async def test_connection_errors_are_transient(self, es_config, sample_message):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        service = IndexService(client=client, config=es_config)

        with pytest.raises(IndexUnavailableError):
            await service.index_message(sample_message)

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, es_config, sample_message):
        handler = RecordingHandler(httpx.Response(400, json={"error": "mapper_parsing_exception"}))
        service = make_service(handler, es_config)

        with pytest.raises(ExternalServiceError) as exc_info:
            await service.index_message(sample_message)

        assert not isinstance(exc_info.value, IndexUnavailableError)
        assert len(handler.requests) == 1


@pytest.mark.unit
class TestDocumentOperations:
    """get / delete / index setup / health"""

    @pytest.mark.asyncio
    async def test_get_missing_document_returns_none(self, es_config):
        service = make_service(RecordingHandler(httpx.Response(404, json={"found": False})), es_config)
        assert await service.get_message("acct-1:missing") is None

    @pytest.mark.asyncio
    async def test_get_returns_canonical_message(self, es_config, sample_message):
        source = sample_message.index_document()
        handler = RecordingHandler(httpx.Response(200, json={"_id": "x", "_source": source}))
        service = make_service(handler, es_config)

        message = await service.get_message(sample_message.document_id)

        assert message.message_id == sample_message.message_id
        assert message.account_id == "acct-1"

    @pytest.mark.asyncio
    async def test_delete_missing_document_returns_false(self, es_config):
        service = make_service(RecordingHandler(httpx.Response(404)), es_config)
        assert await service.delete_message("acct-1:missing") is False

    @pytest.mark.asyncio
    async def test_ensure_index_creates_when_missing(self, es_config):
        handler = RecordingHandler(httpx.Response(404), httpx.Response(200, json={"acknowledged": True}))
        service = make_service(handler, es_config)

        assert await service.ensure_index() is True

        create = handler.requests[1]
        assert create.method == "PUT"
        assert "mappings" in json.loads(create.content)

    @pytest.mark.asyncio
    async def test_health_reflects_cluster_status(self, es_config):
        service = make_service(RecordingHandler(httpx.Response(200, json={"status": "red"})), es_config)
        assert await service.check_health() is False


@pytest.mark.unit
class TestCircuitBreaker:
    """Circuit breaker behaviour"""

    @pytest.mark.asyncio
    async def test_circuit_opens_after_threshold(self, es_config, sample_message):
        """
        Given: An index that keeps failing and a threshold of two
        When: Two indexing calls fail
        Then: The third call is rejected without reaching the index
        """
        config = es_config.model_copy(update={"max_retries": 1})
        handler = RecordingHandler(httpx.Response(503))
        service = make_service(handler, config, failure_threshold=2)

        for _ in range(2):
            with pytest.raises(IndexUnavailableError):
                await service.index_message(sample_message)

        assert service.circuit_breaker.state is CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await service.index_message(sample_message)
        assert len(handler.requests) == 2

    def test_half_open_success_closes(self):
        breaker = CircuitBreaker(failure_threshold=1, timeout_seconds=0)
        breaker.record_failure(RuntimeError("boom"))
        assert breaker.state is CircuitState.OPEN

        breaker.before_call()
        assert breaker.state is CircuitState.HALF_OPEN

        breaker.record_success()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_half_open_failure_reopens(self):
        breaker = CircuitBreaker(failure_threshold=1, timeout_seconds=0)
        breaker.record_failure(RuntimeError("boom"))
        breaker.before_call()

        breaker.record_failure(RuntimeError("again"))

        assert breaker.state is CircuitState.OPEN
