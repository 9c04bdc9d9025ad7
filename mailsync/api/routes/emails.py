"""Read and delete indexed messages."""

from fastapi import APIRouter, Depends, HTTPException, status

from mailsync.api.dependencies import get_sync_worker
from mailsync.api.models import MessageResponse, SyncActionResponse
from mailsync.models.email import document_id_for
from mailsync.services.index_service import IndexService
from mailsync.workers.sync_worker import SyncWorker

router = APIRouter(prefix="/emails", tags=["Emails"])


def _index(worker: SyncWorker) -> IndexService:
    if worker.index_service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Message index not configured")
    return worker.index_service


# Message-IDs may contain "/", hence the path converter
@router.get("/{account_id}/{message_id:path}", response_model=MessageResponse)
async def get_message(
    account_id: str, message_id: str, worker: SyncWorker = Depends(get_sync_worker)
) -> MessageResponse:
    message = await _index(worker).get_message(document_id_for(account_id, message_id))
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    return MessageResponse(data=message)


@router.delete("/{account_id}/{message_id:path}", response_model=SyncActionResponse)
async def delete_message(
    account_id: str, message_id: str, worker: SyncWorker = Depends(get_sync_worker)
) -> SyncActionResponse:
    """Remove a message from the index. The mailbox itself is not touched."""
    if not await _index(worker).delete_message(document_id_for(account_id, message_id)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    return SyncActionResponse(message="Message deleted", account_id=account_id)
