"""Human-in-the-loop holding area for alerts that should not auto-ticket.

Items wait in ``pending`` until an operator approves or rejects them; there is
deliberately no timeout. Approval pushes the (possibly edited) decision onto
the bridge queue.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from issue_bridge.database import utcnow
from issue_bridge.exceptions import InvalidTransition, ResourceNotFound
from issue_bridge.handlers.bridge_queue import enqueue
from issue_bridge.handlers.event_store import get_event, mark_event
from issue_bridge.handlers.metrics import record_outcome
from issue_bridge.models.queue_item import BridgeQueueItem
from issue_bridge.models.triage_item import TriageItem
from issue_bridge.models.webhook_event import WebhookEvent
from issue_bridge.privacy import redact_text
from issue_bridge.schemas.bridge import RoutingDecision
from issue_bridge.schemas.events import SentryWebhookPayload

logger = logging.getLogger(__name__)


async def submit_for_triage(
    db: AsyncSession,
    event: WebhookEvent,
    payload: SentryWebhookPayload,
    decision: RoutingDecision,
    ticket_payload: dict,
    reason: str,
    now: datetime | None = None,
) -> TriageItem:
    issue = payload.data.issue
    sentry_event = payload.data.event
    item = TriageItem(
        tenant_id=event.tenant_id,
        webhook_event_id=event.id,
        source_issue_id=issue.id,
        source_project=issue.project.slug or issue.project.name or "unknown",
        error_title=redact_text(issue.title)[:255] or issue.error_type,
        error_type=issue.error_type,
        error_message=redact_text(issue.error_message),
        culprit=issue.culprit,
        environment=sentry_event.environment if sentry_event else None,
        release_version=sentry_event.release if sentry_event else None,
        event_count=issue.count or 1,
        first_seen=issue.first_seen or None,
        suggested_project_id=decision.project_id,
        suggested_owner_id=decision.owner_id,
        suggested_priority=decision.priority,
        matched_rule_id=decision.matched_rule_id,
        confidence=decision.confidence,
        triage_reason=reason,
        ticket_payload=ticket_payload,
        status="pending",
        created_at=now or utcnow(),
    )
    db.add(item)
    await db.flush()
    logger.info("Issue %s held for triage (%s) as item %d", issue.id, reason, item.id)
    return item


async def find_pending_triage(db: AsyncSession, tenant_id: str, source_issue_id: str) -> TriageItem | None:
    result = await db.execute(
        select(TriageItem)
        .where(
            TriageItem.tenant_id == tenant_id,
            TriageItem.source_issue_id == source_issue_id,
            TriageItem.status == "pending",
        )
        .order_by(TriageItem.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def bump_triage_item(db: AsyncSession, item: TriageItem) -> TriageItem:
    """Fold a repeat event into an item that is still awaiting review."""
    await db.execute(
        update(TriageItem)
        .where(TriageItem.id == item.id)
        .values(event_count=TriageItem.event_count + 1)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(item)
    return item


async def get_triage_item(db: AsyncSession, tenant_id: str, item_id: int) -> TriageItem:
    result = await db.execute(
        select(TriageItem).where(TriageItem.id == item_id, TriageItem.tenant_id == tenant_id)
    )
    item = result.scalar_one_or_none()
    if item is None:
        raise ResourceNotFound("TriageItem", item_id)
    return item


async def _approve(
    db: AsyncSession,
    item: TriageItem,
    resolver: str,
    status: str,
    project_id: str | None = None,
    owner_id: str | None = None,
    priority: str | None = None,
    now: datetime | None = None,
) -> BridgeQueueItem:
    now = now or utcnow()
    decision = RoutingDecision(
        project_id=project_id or item.suggested_project_id,
        owner_id=owner_id or item.suggested_owner_id,
        priority=priority or item.suggested_priority or "medium",
        matched_rule_id=item.matched_rule_id,
        confidence=item.confidence if item.confidence is not None else 1.0,
    )
    ticket_payload = {
        **(item.ticket_payload or {}),
        "project_id": decision.project_id,
        "assignee_id": decision.owner_id,
        "priority": decision.priority,
    }
    event = await get_event(db, item.tenant_id, item.webhook_event_id)
    queued = await enqueue(
        db,
        tenant_id=item.tenant_id,
        webhook_event_id=item.webhook_event_id,
        source_issue_id=item.source_issue_id,
        source_event_id=event.source_event_id,
        event_type=event.event_type,
        decision=decision,
        ticket_payload=ticket_payload,
        ticket_action="create",
        now=now,
    )
    item.status = status
    item.triaged_by = resolver
    item.triaged_at = now
    item.queue_item_id = queued.id
    await db.flush()
    return queued


async def resolve_triage_item(
    db: AsyncSession,
    tenant_id: str,
    item_id: int,
    approve: bool,
    resolver: str,
    project_id: str | None = None,
    owner_id: str | None = None,
    priority: str | None = None,
    rejection_reason: str | None = None,
    now: datetime | None = None,
) -> tuple[TriageItem, BridgeQueueItem | None]:
    """Approve (enqueue) or reject (skip the event) a pending triage item.

    ``project_id``, ``owner_id`` and ``priority`` override the suggestion on
    approval.
    """
    now = now or utcnow()
    item = await get_triage_item(db, tenant_id, item_id)
    if item.status != "pending":
        raise InvalidTransition(
            f"triage item {item.id} is already {item.status}",
            {"triage_item_id": item.id, "status": item.status},
        )

    if approve:
        queued = await _approve(db, item, resolver, "approved", project_id, owner_id, priority, now=now)
        logger.info("Triage item %d approved by %s -> queue item %d", item.id, resolver, queued.id)
        return item, queued

    item.status = "rejected"
    item.triaged_by = resolver
    item.triaged_at = now
    item.rejection_reason = rejection_reason
    event = await get_event(db, tenant_id, item.webhook_event_id)
    await mark_event(db, event, "skipped", error_message=rejection_reason or "rejected in triage", now=now)
    await record_outcome(db, tenant_id, "skipped", now=now)
    logger.info("Triage item %d rejected by %s", item.id, resolver)
    return item, None


async def approve_all_pending(
    db: AsyncSession,
    tenant_id: str,
    resolver: str,
    now: datetime | None = None,
) -> list[BridgeQueueItem]:
    """Operator bulk action: approve every pending item with its suggestion."""
    pending = await list_triage_items(db, tenant_id, status="pending", limit=None)
    queued = [await _approve(db, item, resolver, "auto_approved", now=now) for item in pending]
    if queued:
        logger.info("%s bulk-approved %d triage item(s) for tenant %s", resolver, len(queued), tenant_id)
    return queued


async def list_triage_items(
    db: AsyncSession,
    tenant_id: str,
    status: str | None = "pending",
    limit: int | None = 100,
) -> list[TriageItem]:
    stmt = select(TriageItem).where(TriageItem.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(TriageItem.status == status)
    stmt = stmt.order_by(TriageItem.created_at, TriageItem.id)
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())
