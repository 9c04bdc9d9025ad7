"""Slack and webhook integration endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status

from mailsync.api.dependencies import get_sync_worker
from mailsync.api.models import IntegrationActionResponse, IntegrationStatusResponse, WebhookUrlRequest
from mailsync.workers.sync_worker import SyncWorker

router = APIRouter(prefix="/integrations", tags=["Integrations"])


@router.get("/slack/status", response_model=IntegrationStatusResponse)
async def slack_status(worker: SyncWorker = Depends(get_sync_worker)) -> IntegrationStatusResponse:
    return IntegrationStatusResponse(data={"enabled": worker.slack_notifier.enabled})


@router.post("/slack/test", response_model=IntegrationActionResponse)
async def test_slack(worker: SyncWorker = Depends(get_sync_worker)) -> IntegrationActionResponse:
    """Post a test message to the configured channel."""
    if not worker.slack_notifier.enabled:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Slack notifications are not configured")

    sent = await worker.slack_notifier.send_custom_message(
        "Test notification from mailsync", title="Test Message"
    )
    if not sent:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Slack rejected the test notification")
    return IntegrationActionResponse(message="Test notification sent")


@router.get("/webhook/status", response_model=IntegrationStatusResponse)
async def webhook_status(worker: SyncWorker = Depends(get_sync_worker)) -> IntegrationStatusResponse:
    return IntegrationStatusResponse(data={"enabled": worker.webhook_notifier.enabled})


@router.post("/webhook/url", response_model=IntegrationActionResponse)
async def update_webhook_url(
    request: WebhookUrlRequest, worker: SyncWorker = Depends(get_sync_worker)
) -> IntegrationActionResponse:
    """Replace the webhook endpoint for this process. Not persisted across restarts."""
    worker.webhook_notifier.set_url(str(request.url))
    return IntegrationActionResponse(message="Webhook URL updated")


@router.post("/webhook/test", response_model=IntegrationActionResponse)
async def test_webhook(worker: SyncWorker = Depends(get_sync_worker)) -> IntegrationActionResponse:
    if not worker.webhook_notifier.enabled:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No webhook URL configured")

    sent = await worker.webhook_notifier.dispatch_custom_event(
        "test", {"message": "Test webhook from mailsync"}
    )
    if not sent:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Webhook endpoint rejected the test event")
    return IntegrationActionResponse(message="Test webhook dispatched")
