"""Webhook routes for issue-bridge."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from issue_bridge.database import get_db
from issue_bridge.handlers.pipeline import handle_sentry_webhook
from issue_bridge.schemas.events import SentryWebhookPayload, WebhookResponse

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/sentry/{tenant_id}", response_model=WebhookResponse)
async def sentry_webhook(
    tenant_id: str,
    payload: SentryWebhookPayload,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> WebhookResponse:
    """Receive a Sentry issue webhook for a tenant.

    Signature verification happens upstream. Redeliveries of the same event
    return ``duplicate`` and never produce a second ticket.
    """
    raw = await request.json()
    return await handle_sentry_webhook(db, tenant_id, payload, raw_payload=raw)
