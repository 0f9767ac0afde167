"""Durable work queue feeding the ticket system.

Item lifecycle::

    pending -> processing -> completed
                          -> pending        (retry with backoff, or released)
                          -> dead_lettered  (attempts exhausted or forced)

Claiming is a single conditional UPDATE so any number of workers can poll
without a coordinator. Every transition out of ``processing`` is a
compare-and-swap on the caller's claim; losing it raises ``StaleClaim``.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from issue_bridge.config import settings
from issue_bridge.database import utcnow
from issue_bridge.exceptions import ResourceNotFound, StaleClaim
from issue_bridge.handlers.dead_letter import move_to_dead_letter
from issue_bridge.models.dead_letter import DeadLetterItem
from issue_bridge.models.queue_item import BridgeQueueItem
from issue_bridge.schemas.bridge import RoutingDecision

logger = logging.getLogger(__name__)


def backoff_delay(attempt_count: int) -> timedelta:
    """Retry delay after the ``attempt_count``-th failed attempt: 2**n minutes."""
    return timedelta(minutes=2 ** attempt_count)


async def enqueue(
    db: AsyncSession,
    *,
    tenant_id: str,
    webhook_event_id: int,
    source_issue_id: str,
    source_event_id: str,
    event_type: str,
    decision: RoutingDecision,
    ticket_payload: dict,
    ticket_action: str = "create",
    max_attempts: int | None = None,
    not_before: datetime | None = None,
    now: datetime | None = None,
) -> BridgeQueueItem:
    """Add a pending item; ``not_before`` holds it back (e.g. admission denied)."""
    now = now or utcnow()
    item = BridgeQueueItem(
        tenant_id=tenant_id,
        webhook_event_id=webhook_event_id,
        source_issue_id=source_issue_id,
        source_event_id=source_event_id,
        event_type=event_type,
        ticket_action=ticket_action,
        target_project_id=decision.project_id,
        target_owner_id=decision.owner_id,
        target_priority=decision.priority,
        routing_rule_id=decision.matched_rule_id,
        ticket_payload=ticket_payload,
        status="pending",
        attempt_count=0,
        max_attempts=max_attempts or settings.default_max_attempts,
        next_attempt_at=max(not_before, now) if not_before else now,
        created_at=now,
    )
    db.add(item)
    await db.flush()
    logger.info(
        "Enqueued %s for issue %s (tenant %s) as item %d",
        ticket_action, source_issue_id, tenant_id, item.id,
    )
    return item


async def claim_batch(
    db: AsyncSession,
    worker_id: str,
    batch_size: int,
    now: datetime | None = None,
    tenant_id: str | None = None,
) -> list[BridgeQueueItem]:
    """Atomically claim up to ``batch_size`` due items for ``worker_id``.

    One ``UPDATE ... WHERE id IN (SELECT ... FOR UPDATE SKIP LOCKED)`` flips
    the rows to ``processing``, stamps the lease and bumps ``attempt_count``.
    Rows locked by a concurrent claimer are skipped, never waited on. The
    claim is committed before returning so the lease is visible to others.
    """
    now = now or utcnow()
    token = uuid.uuid4().hex

    due = (
        select(BridgeQueueItem.id)
        .where(
            BridgeQueueItem.status == "pending",
            BridgeQueueItem.next_attempt_at <= now,
        )
        .order_by(BridgeQueueItem.created_at, BridgeQueueItem.id)
        .limit(batch_size)
        .with_for_update(skip_locked=True)
    )
    if tenant_id is not None:
        due = due.where(BridgeQueueItem.tenant_id == tenant_id)

    await db.execute(
        update(BridgeQueueItem)
        .where(BridgeQueueItem.id.in_(due), BridgeQueueItem.status == "pending")
        .values(
            status="processing",
            claimed_by=worker_id,
            claimed_at=now,
            claim_token=token,
            attempt_count=BridgeQueueItem.attempt_count + 1,
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(
        select(BridgeQueueItem)
        .where(BridgeQueueItem.claim_token == token)
        .order_by(BridgeQueueItem.created_at, BridgeQueueItem.id)
        .execution_options(populate_existing=True)
    )
    items = list(result.scalars().all())
    await db.commit()
    if items:
        logger.info("Worker %s claimed %d item(s)", worker_id, len(items))
    return items


async def _transition(
    db: AsyncSession,
    item: BridgeQueueItem,
    worker_id: str,
    **values,
) -> None:
    """Apply ``values`` only if ``worker_id`` still holds ``item``'s claim."""
    result = await db.execute(
        update(BridgeQueueItem)
        .where(
            BridgeQueueItem.id == item.id,
            BridgeQueueItem.status == "processing",
            BridgeQueueItem.claimed_by == worker_id,
            BridgeQueueItem.claim_token == item.claim_token,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleClaim(
            f"worker {worker_id} no longer holds queue item {item.id}",
            {"queue_item_id": item.id, "worker_id": worker_id},
        )
    await db.refresh(item)


async def complete_item(
    db: AsyncSession,
    item: BridgeQueueItem,
    worker_id: str,
    ticket_id: str | None,
    created_ticket: bool = False,
    now: datetime | None = None,
) -> BridgeQueueItem:
    await _transition(
        db,
        item,
        worker_id,
        status="completed",
        ticket_id=ticket_id,
        created_ticket=created_ticket,
        last_error=None,
        processed_at=now or utcnow(),
    )
    return item


async def fail_item(
    db: AsyncSession,
    item: BridgeQueueItem,
    worker_id: str,
    error: str,
    force_dead_letter: bool = False,
    error_details: dict | None = None,
    now: datetime | None = None,
) -> DeadLetterItem | None:
    """Record a failed attempt.

    Dead-letters the item when its attempts are exhausted or when forced and
    returns the new dead-letter record; otherwise schedules a retry after
    ``backoff_delay(attempt_count)`` and returns None.
    """
    now = now or utcnow()
    if force_dead_letter or item.attempt_count >= item.max_attempts:
        await _transition(
            db,
            item,
            worker_id,
            status="dead_lettered",
            last_error=error[:1000],
            processed_at=now,
        )
        return await move_to_dead_letter(db, item, error, error_details, now=now)

    retry_at = now + backoff_delay(item.attempt_count)
    await _transition(
        db,
        item,
        worker_id,
        status="pending",
        last_error=error[:1000],
        next_attempt_at=retry_at,
        claimed_by=None,
        claimed_at=None,
        claim_token=None,
    )
    logger.info(
        "Queue item %d failed attempt %d/%d; retrying at %s",
        item.id, item.attempt_count, item.max_attempts, retry_at.isoformat(),
    )
    return None


async def release_item(
    db: AsyncSession,
    item: BridgeQueueItem,
    worker_id: str,
    hold_until: datetime,
    reason: str | None = None,
) -> BridgeQueueItem:
    """Hand a claimed item back without consuming an attempt."""
    await _transition(
        db,
        item,
        worker_id,
        status="pending",
        attempt_count=BridgeQueueItem.attempt_count - 1,
        next_attempt_at=hold_until,
        last_error=reason,
        claimed_by=None,
        claimed_at=None,
        claim_token=None,
    )
    logger.info("Queue item %d released until %s (%s)", item.id, hold_until.isoformat(), reason)
    return item


async def recover_stale_claims(
    db: AsyncSession,
    lease_seconds: int,
    now: datetime | None = None,
) -> int:
    """Return items whose lease expired to ``pending``; attempt counts are kept."""
    now = now or utcnow()
    expired_before = now - timedelta(seconds=lease_seconds)
    result = await db.execute(
        update(BridgeQueueItem)
        .where(
            BridgeQueueItem.status == "processing",
            BridgeQueueItem.claimed_at < expired_before,
        )
        .values(
            status="pending",
            next_attempt_at=now,
            claimed_by=None,
            claimed_at=None,
            claim_token=None,
        )
        .execution_options(synchronize_session=False)
    )
    recovered = result.rowcount or 0
    if recovered:
        logger.warning("Recovered %d queue item(s) with expired leases", recovered)
    return recovered


async def get_queue_item(db: AsyncSession, tenant_id: str, item_id: int) -> BridgeQueueItem:
    result = await db.execute(
        select(BridgeQueueItem).where(
            BridgeQueueItem.id == item_id,
            BridgeQueueItem.tenant_id == tenant_id,
        )
    )
    item = result.scalar_one_or_none()
    if item is None:
        raise ResourceNotFound("BridgeQueueItem", item_id)
    return item
