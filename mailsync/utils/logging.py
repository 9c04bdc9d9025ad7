"""Structured logging for mailsync (structlog over stdlib logging)."""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from structlog.typing import EventDict, Processor

from mailsync.config.settings import settings

# Matched as substrings of event keys
_SECRET_MARKERS = ("password", "secret", "token", "api_key", "ciphertext")

# Libraries that log every request at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "asyncio")

_configured = False


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask values whose key looks like a credential."""
    for key in list(event_dict):
        if any(marker in key.lower() for marker in _SECRET_MARKERS):
            event_dict[key] = "***"
    return event_dict


def configure_logging(force: bool = False) -> None:
    """
    Configure structlog once per process.

    JSON lines in production-style deployments, the colored console renderer
    otherwise. Account and request context bound through
    ``structlog.contextvars`` is merged into every event.
    """
    global _configured
    if _configured and not force:
        return

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.app.log_format == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, settings.app.log_level)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    _configured = True


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def account_context(account_id: str, **extra: Any) -> Iterator[None]:
    """Bind ``account_id`` (and ``extra``) to every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(account_id=account_id, **extra):
        yield
