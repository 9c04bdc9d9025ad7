"""Sync control API endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from mailsync.api.dependencies import get_sync_worker
from mailsync.api.models import SyncActionResponse, SyncRequest, SyncStatusResponse
from mailsync.utils.logging import get_logger
from mailsync.workers.sync_worker import SyncWorker

logger = get_logger(__name__)
router = APIRouter(prefix="/sync", tags=["Sync"])


@router.post("/start", response_model=SyncActionResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_sync(request: SyncRequest, worker: SyncWorker = Depends(get_sync_worker)) -> SyncActionResponse:
    """Start one account's sync. Backfill continues after the response is sent."""
    worker.start_in_background(request.account_id)
    return SyncActionResponse(message="Sync started", account_id=request.account_id)


@router.post("/start-all", response_model=SyncActionResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_all_syncs(worker: SyncWorker = Depends(get_sync_worker)) -> SyncActionResponse:
    worker.start_all_in_background()
    return SyncActionResponse(message=f"Starting {worker.coordinator.account_count} accounts")


@router.post("/stop", response_model=SyncActionResponse)
async def stop_sync(request: SyncRequest, worker: SyncWorker = Depends(get_sync_worker)) -> SyncActionResponse:
    await worker.coordinator.stop_sync(request.account_id)
    return SyncActionResponse(message="Sync stopped", account_id=request.account_id)


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(
    account_id: Optional[str] = Query(None, description="Limit to one account"),
    worker: SyncWorker = Depends(get_sync_worker),
) -> SyncStatusResponse:
    """Status of one account or all accounts. An unknown account yields ``data: null``."""
    return SyncStatusResponse(data=worker.coordinator.get_sync_status(account_id))
