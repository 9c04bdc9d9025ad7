"""API route modules."""

from .accounts import router as accounts_router
from .emails import router as emails_router
from .integrations import router as integrations_router
from .sync import router as sync_router

__all__ = ["accounts_router", "emails_router", "integrations_router", "sync_router"]
