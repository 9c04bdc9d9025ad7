"""Account management API endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status

from mailsync.api.dependencies import get_sync_worker
from mailsync.api.models import AccountCreateRequest, AccountListResponse, AccountResponse
from mailsync.utils.logging import get_logger
from mailsync.workers.sync_worker import SyncWorker

logger = get_logger(__name__)
router = APIRouter(prefix="/accounts", tags=["Accounts"])


@router.get("", response_model=AccountListResponse)
async def list_accounts(worker: SyncWorker = Depends(get_sync_worker)) -> AccountListResponse:
    """List stored accounts. Credentials are never returned."""
    accounts = await worker.account_store.list_accounts()
    return AccountListResponse(
        data=[account.public_view() for account in accounts],
        count=len(accounts),
    )


@router.get("/{account_id}", response_model=AccountResponse)
async def get_account(account_id: str, worker: SyncWorker = Depends(get_sync_worker)) -> AccountResponse:
    account = await worker.account_store.get_account(account_id)
    if account is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Account not found: {account_id}",
        )
    return AccountResponse(data=account.public_view())


@router.post("", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def create_account(
    request: AccountCreateRequest, worker: SyncWorker = Depends(get_sync_worker)
) -> AccountResponse:
    """
    Store a new account with its password encrypted.

    Active accounts are registered with the coordinator and, unless
    ``start_sync`` is false, their sync starts in the background.
    """
    account = await worker.account_store.create_account(
        email=request.email,
        host=request.imap.host,
        port=request.imap.port,
        secure=request.imap.secure,
        user=request.imap.user,
        password=request.imap.password,
        is_active=request.is_active,
    )

    if account.is_active:
        if request.start_sync:
            await worker.add_and_start(account)
        else:
            await worker.coordinator.add_account(account)

    logger.info("Account created via API", account_id=account.id, email=account.email)
    return AccountResponse(data=account.public_view())


@router.delete("/{account_id}")
async def delete_account(account_id: str, worker: SyncWorker = Depends(get_sync_worker)) -> dict:
    """Stop syncing, deregister and delete the stored account."""
    was_registered = await worker.coordinator.remove_account(account_id)
    was_stored = await worker.account_store.delete_account(account_id)
    if not (was_registered or was_stored):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Account not found: {account_id}",
        )

    logger.info("Account deleted via API", account_id=account_id)
    return {"success": True, "message": "Account deleted successfully"}
