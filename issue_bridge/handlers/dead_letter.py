"""Dead-letter store: terminal holding area for queue items that exhausted retries.

Records leave ``pending`` only through an operator action; there is no
automatic replay.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from issue_bridge.config import settings
from issue_bridge.database import utcnow
from issue_bridge.exceptions import InvalidTransition, ResourceNotFound
from issue_bridge.handlers.routing import normalize_event, route_event
from issue_bridge.models.bridge_config import BridgeConfig
from issue_bridge.models.dead_letter import DeadLetterItem
from issue_bridge.models.queue_item import BridgeQueueItem
from issue_bridge.models.webhook_event import WebhookEvent
from issue_bridge.schemas.events import SentryWebhookPayload
from issue_bridge.templates.ticket_templates import build_action_ticket_payload, decision_for_action

logger = logging.getLogger(__name__)


def _snapshot(item: BridgeQueueItem) -> dict:
    return {
        "source_event_id": item.source_event_id,
        "event_type": item.event_type,
        "ticket_action": item.ticket_action,
        "target_project_id": item.target_project_id,
        "target_owner_id": item.target_owner_id,
        "target_priority": item.target_priority,
        "routing_rule_id": item.routing_rule_id,
        "max_attempts": item.max_attempts,
        "ticket_payload": item.ticket_payload,
    }


async def move_to_dead_letter(
    db: AsyncSession,
    item: BridgeQueueItem,
    failure_reason: str,
    error_details: dict | None = None,
    now: datetime | None = None,
) -> DeadLetterItem:
    """Snapshot ``item`` into the dead-letter store.

    Only the queue's fail transition calls this; the caller owns the status
    change on the queue item itself.
    """
    record = DeadLetterItem(
        tenant_id=item.tenant_id,
        original_queue_id=item.id,
        queue_type="bridge",
        webhook_event_id=item.webhook_event_id,
        source_issue_id=item.source_issue_id,
        event_type=item.event_type,
        original_payload=_snapshot(item),
        failure_reason=failure_reason[:1000],
        attempt_count=item.attempt_count,
        last_error_details=error_details,
        status="pending",
        created_at=now or utcnow(),
    )
    db.add(record)
    await db.flush()
    logger.warning(
        "Queue item %d (issue %s) dead-lettered after %d attempt(s): %s",
        item.id, item.source_issue_id, item.attempt_count, failure_reason,
    )
    return record


async def get_dead_letter(db: AsyncSession, tenant_id: str, dead_letter_id: int) -> DeadLetterItem:
    result = await db.execute(
        select(DeadLetterItem).where(
            DeadLetterItem.id == dead_letter_id,
            DeadLetterItem.tenant_id == tenant_id,
        )
    )
    record = result.scalar_one_or_none()
    if record is None:
        raise ResourceNotFound("DeadLetterItem", dead_letter_id)
    return record


def _require_pending(record: DeadLetterItem) -> None:
    if record.status != "pending":
        raise InvalidTransition(
            f"dead-letter item {record.id} is already {record.status}",
            {"dead_letter_id": record.id, "status": record.status},
        )


async def _rerouted_destination(db: AsyncSession, record: DeadLetterItem, snapshot: dict, now: datetime) -> dict:
    """Route the stored event again against the tenant's current rules."""
    config = (
        await db.execute(select(BridgeConfig).where(BridgeConfig.tenant_id == record.tenant_id))
    ).scalar_one_or_none()
    event = (
        await db.execute(select(WebhookEvent).where(WebhookEvent.id == record.webhook_event_id))
    ).scalar_one()
    if config is None:
        raise ResourceNotFound("BridgeConfig", record.tenant_id)

    payload = SentryWebhookPayload.model_validate(event.raw_payload)
    allowlist = config.allowlisted_tags or settings.default_allowlisted_tags
    decision = await route_event(db, config, normalize_event(payload, allowlist))
    if decision is None:
        raise InvalidTransition(
            f"dead-letter item {record.id} no longer routes to any destination",
            {"dead_letter_id": record.id},
        )
    ticket_action = snapshot.get("ticket_action") or "create"
    decision = decision_for_action(decision, ticket_action)
    return {
        **snapshot,
        "target_project_id": decision.project_id,
        "target_owner_id": decision.owner_id,
        "target_priority": decision.priority,
        "routing_rule_id": decision.matched_rule_id,
        "ticket_payload": build_action_ticket_payload(payload, decision, ticket_action, allowlist, now=now),
    }


async def replay(
    db: AsyncSession,
    tenant_id: str,
    dead_letter_id: int,
    resolver: str,
    notes: str | None = None,
    reroute: bool = False,
    now: datetime | None = None,
) -> tuple[DeadLetterItem, BridgeQueueItem]:
    """Re-inject a dead-lettered item as a fresh pending queue item.

    By default the stored destination and payload are reused verbatim; with
    ``reroute`` the original event is routed again first.
    """
    now = now or utcnow()
    record = await get_dead_letter(db, tenant_id, dead_letter_id)
    _require_pending(record)

    snapshot = dict(record.original_payload or {})
    if reroute:
        snapshot = await _rerouted_destination(db, record, snapshot, now)

    item = BridgeQueueItem(
        tenant_id=record.tenant_id,
        webhook_event_id=record.webhook_event_id,
        source_issue_id=record.source_issue_id,
        source_event_id=snapshot.get("source_event_id") or f"replay-{record.id}",
        event_type=record.event_type,
        ticket_action=snapshot.get("ticket_action") or "create",
        target_project_id=snapshot["target_project_id"],
        target_owner_id=snapshot.get("target_owner_id"),
        target_priority=snapshot.get("target_priority") or "medium",
        routing_rule_id=snapshot.get("routing_rule_id"),
        ticket_payload=snapshot.get("ticket_payload") or {},
        status="pending",
        attempt_count=0,
        max_attempts=snapshot.get("max_attempts") or settings.default_max_attempts,
        next_attempt_at=now,
        created_at=now,
    )
    db.add(item)
    await db.flush()

    record.status = "replayed"
    record.resolved_by = resolver
    record.resolved_at = now
    record.resolution_notes = notes
    record.replayed_queue_item_id = item.id
    await db.flush()
    logger.info("Dead-letter %d replayed by %s as queue item %d", record.id, resolver, item.id)
    return record, item


async def discard(
    db: AsyncSession,
    tenant_id: str,
    dead_letter_id: int,
    resolver: str,
    notes: str | None = None,
    now: datetime | None = None,
) -> DeadLetterItem:
    record = await get_dead_letter(db, tenant_id, dead_letter_id)
    _require_pending(record)
    record.status = "discarded"
    record.resolved_by = resolver
    record.resolved_at = now or utcnow()
    record.resolution_notes = notes
    await db.flush()
    logger.info("Dead-letter %d discarded by %s", record.id, resolver)
    return record


async def list_dead_letters(
    db: AsyncSession,
    tenant_id: str,
    status: str | None = "pending",
    limit: int = 100,
) -> list[DeadLetterItem]:
    stmt = select(DeadLetterItem).where(DeadLetterItem.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(DeadLetterItem.status == status)
    result = await db.execute(stmt.order_by(DeadLetterItem.created_at.desc(), DeadLetterItem.id.desc()).limit(limit))
    return list(result.scalars().all())
