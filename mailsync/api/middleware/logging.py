"""Request logging middleware with a per-request id."""

import time
import uuid
from typing import Callable

import structlog
from fastapi import Request

from mailsync.utils.logging import get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


async def request_logging_middleware(request: Request, call_next: Callable):
    """
    Time each request and log its outcome.

    The caller's ``X-Request-ID`` is reused when present, otherwise one is
    generated. It is bound to the log context for the duration of the
    request and echoed on the response.
    """
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    started = time.perf_counter()

    with structlog.contextvars.bound_contextvars(request_id=request_id):
        response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

        fields = {
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": elapsed_ms,
        }
        if response.status_code >= 500:
            logger.error("Request failed", **fields)
        elif response.status_code >= 400:
            logger.warning("Request rejected", **fields)
        else:
            logger.debug("Request completed", **fields)

    response.headers[REQUEST_ID_HEADER] = request_id
    return response
