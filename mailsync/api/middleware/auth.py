"""X-API-Key guard for the control API."""

import hmac
from typing import Callable

from fastapi import Request, status
from fastapi.responses import JSONResponse

from mailsync.api.models import ErrorResponse
from mailsync.config.settings import settings
from mailsync.utils.logging import get_logger

logger = get_logger(__name__)

API_KEY_HEADER = "X-API-Key"
PROTECTED_PREFIX = "/api/"


def _reject(request: Request, status_code: int, message: str) -> JSONResponse:
    logger.warning(
        message,
        path=request.url.path,
        client_ip=request.client.host if request.client else None,
    )
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message).model_dump(mode="json"),
    )


def is_valid_api_key(candidate: str) -> bool:
    expected = settings.admin.api_key.get_secret_value()
    return bool(expected) and hmac.compare_digest(candidate.encode(), expected.encode())


async def api_key_middleware(request: Request, call_next: Callable):
    """Require a valid key on account and sync control routes; CORS preflight passes."""
    if not request.url.path.startswith(PROTECTED_PREFIX) or request.method == "OPTIONS":
        return await call_next(request)

    supplied = request.headers.get(API_KEY_HEADER)
    if not supplied:
        return _reject(request, status.HTTP_401_UNAUTHORIZED, "Missing API key")
    if not is_valid_api_key(supplied):
        return _reject(request, status.HTTP_403_FORBIDDEN, "Invalid API key")

    return await call_next(request)
