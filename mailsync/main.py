"""Control API and process entry point for mailsync."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mailsync.api.middleware import register_middleware
from mailsync.api.models import ErrorResponse
from mailsync.api.routes import accounts_router, emails_router, integrations_router, sync_router
from mailsync.config.settings import settings
from mailsync.exceptions import (
    DecryptionError,
    ExternalServiceError,
    MailSyncError,
    UnknownAccountError,
)
from mailsync.utils.logging import configure_logging, get_logger
from mailsync.workers.sync_worker import SyncWorker

configure_logging()
logger = get_logger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Start the sync worker with the app and stop it on shutdown."""
    logger.info("Starting mailsync", env=settings.app.env)

    try:
        worker = SyncWorker()
    except DecryptionError as e:
        # No usable encryption key: nothing can be synced
        logger.error("Sync worker not started", error=str(e))
        if settings.app.env == "production":
            raise
        worker = None

    task = None
    if worker is not None:
        app.state.sync_worker = worker
        task = asyncio.create_task(worker.run(), name="sync-worker")
        logger.info("Sync worker started")
    else:
        logger.warning("No sync worker - running in API-only mode")

    yield

    logger.info("Shutting down sync worker...")
    if worker is not None:
        await worker.stop()
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.info("Sync worker task stopped")
    app.state.sync_worker = None
    logger.info("Application shutdown complete")


app = FastAPI(
    title="mailsync",
    description="Multi-account IMAP synchronization with classification, indexing and notification",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.admin.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_middleware(app)

app.include_router(accounts_router, prefix="/api/v1")
app.include_router(sync_router, prefix="/api/v1")
app.include_router(integrations_router, prefix="/api/v1")
app.include_router(emails_router, prefix="/api/v1")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message).model_dump(mode="json"),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(UnknownAccountError)
async def unknown_account_handler(request: Request, exc: UnknownAccountError) -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, str(exc))


@app.exception_handler(ExternalServiceError)
async def external_service_handler(request: Request, exc: ExternalServiceError) -> JSONResponse:
    logger.error("Collaborator failure", service=exc.service, error=str(exc), path=request.url.path)
    return _error(status.HTTP_502_BAD_GATEWAY, str(exc))


@app.exception_handler(MailSyncError)
async def mailsync_error_handler(request: Request, exc: MailSyncError) -> JSONResponse:
    logger.warning("Request failed", error=str(exc), error_type=type(exc).__name__, path=request.url.path)
    return _error(status.HTTP_400_BAD_REQUEST, str(exc))


@app.get("/health")
async def health_check():
    """Liveness check."""
    return {"status": "healthy", "version": VERSION}


@app.get("/health/detailed")
async def detailed_health(request: Request):
    """Component health: worker, account store, message index."""
    worker = getattr(request.app.state, "sync_worker", None)
    components = {}
    overall_status = "healthy"

    if worker is None:
        return {
            "status": "degraded",
            "version": VERSION,
            "components": {"sync_worker": "stopped"},
        }

    components["sync_worker"] = "running" if worker.running else "stopped"
    components["accounts_registered"] = worker.coordinator.account_count
    statuses = worker.coordinator.get_sync_status()
    components["accounts_connected"] = sum(1 for s in statuses if s.is_connected)

    if await worker.account_store.ping():
        components["redis"] = "connected"
    else:
        components["redis"] = "unavailable"
        overall_status = "degraded"

    if worker.index_service is not None:
        if await worker.index_service.check_health():
            components["elasticsearch"] = "available"
        else:
            components["elasticsearch"] = "unavailable"
            overall_status = "degraded"
        components["elasticsearch_circuit"] = worker.index_service.circuit_breaker.state.value

    return {"status": overall_status, "version": VERSION, "components": components}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "mailsync.main:app",
        host="0.0.0.0",
        port=settings.admin.port,
        reload=settings.app.debug,
        log_level=settings.app.log_level.lower(),
    )
