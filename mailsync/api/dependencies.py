"""Request dependencies shared by the API routers."""

from fastapi import HTTPException, Request, status

from mailsync.workers.sync_worker import SyncWorker


def get_sync_worker(request: Request) -> SyncWorker:
    """Worker started by the application lifespan."""
    worker = getattr(request.app.state, "sync_worker", None)
    if worker is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync worker not running",
        )
    return worker
