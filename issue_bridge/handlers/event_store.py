"""Inbound alert event log.

Ingestion is idempotent on ``<tenant>:<source_event_id>``: webhook transports
redeliver, and a redelivery returns the row recorded the first time.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from issue_bridge.database import insert_ignore_conflict, utcnow
from issue_bridge.exceptions import InvalidTransition, ResourceNotFound
from issue_bridge.models.webhook_event import WebhookEvent
from issue_bridge.privacy import redact_object

logger = logging.getLogger(__name__)

EVENT_STATUSES = {"received", "processing", "processed", "failed", "skipped"}
_TERMINAL = {"processed", "failed", "skipped"}


def dedupe_key(tenant_id: str, source_event_id: str) -> str:
    return f"{tenant_id}:{source_event_id}"


async def ingest(
    db: AsyncSession,
    tenant_id: str,
    source_event_id: str,
    source_issue_id: str | None,
    event_type: str,
    payload: dict,
    now: datetime | None = None,
) -> tuple[WebhookEvent, bool]:
    """Record an inbound event.

    Returns ``(event, created)``; ``created`` is False for a redelivery, in
    which case ``event`` is the previously stored row.
    """
    key = dedupe_key(tenant_id, source_event_id)
    inserted = await insert_ignore_conflict(
        db,
        WebhookEvent.__table__,
        {
            "tenant_id": tenant_id,
            "source_event_id": source_event_id,
            "source_issue_id": source_issue_id,
            "event_type": event_type,
            "raw_payload": redact_object(payload),
            "status": "received",
            "dedupe_key": key,
            "received_at": now or utcnow(),
        },
        index_elements=["dedupe_key"],
    )
    result = await db.execute(select(WebhookEvent).where(WebhookEvent.dedupe_key == key))
    event = result.scalar_one()
    if not inserted:
        logger.info("Duplicate webhook %s for tenant %s — skipping", source_event_id, tenant_id)
    return event, inserted


async def get_event(db: AsyncSession, tenant_id: str, event_id: int) -> WebhookEvent:
    result = await db.execute(
        select(WebhookEvent).where(WebhookEvent.id == event_id, WebhookEvent.tenant_id == tenant_id)
    )
    event = result.scalar_one_or_none()
    if event is None:
        raise ResourceNotFound("WebhookEvent", event_id)
    return event


async def mark_event(
    db: AsyncSession,
    event: WebhookEvent,
    status: str,
    error_message: str | None = None,
    now: datetime | None = None,
) -> WebhookEvent:
    """Move an event to ``status``; terminal statuses stamp ``processed_at``."""
    if status not in EVENT_STATUSES:
        raise InvalidTransition(f"unknown webhook event status {status!r}")
    event.status = status
    if error_message is not None:
        event.error_message = error_message[:500]
    if status in _TERMINAL:
        event.processed_at = now or utcnow()
    await db.flush()
    return event
