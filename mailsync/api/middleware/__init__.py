"""HTTP middleware for the control API."""

from fastapi import FastAPI

from .auth import api_key_middleware
from .logging import request_logging_middleware


def register_middleware(app: FastAPI) -> None:
    """Install request logging outside the API key check so rejections are logged too."""
    app.middleware("http")(api_key_middleware)
    app.middleware("http")(request_logging_middleware)


__all__ = [
    "api_key_middleware",
    "register_middleware",
    "request_logging_middleware",
]
