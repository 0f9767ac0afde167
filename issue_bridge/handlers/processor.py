"""Processes claimed bridge queue items against the ticket system.

Orchestrates one item end to end: admission re-check, ticket action
resolution against the issue mapping, the ticket API call, and the resulting
queue/mapping/breaker/metrics updates. Slack failures never affect the item.
"""

from __future__ import annotations

import logging
import time
from contextlib import suppress
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from issue_bridge.clients.slack_client import SlackClient
from issue_bridge.clients.ticket_client import TicketClient
from issue_bridge.config import settings
from issue_bridge.database import as_utc, async_session, utcnow
from issue_bridge.exceptions import AdmissionDenied, PermanentTicketError, StaleClaim
from issue_bridge.handlers.admin import find_bridge_config
from issue_bridge.handlers.admission import record_failure, record_success, require_admission
from issue_bridge.handlers.bridge_queue import (
    claim_batch,
    complete_item,
    fail_item,
    recover_stale_claims,
    release_item,
)
from issue_bridge.handlers.event_store import get_event, mark_event
from issue_bridge.handlers.issue_mapping import get_mapping, record_ticket_sync, touch_mapping
from issue_bridge.handlers.metrics import record_outcome
from issue_bridge.models.bridge_config import BridgeConfig
from issue_bridge.models.issue_mapping import IssueMapping
from issue_bridge.models.queue_item import BridgeQueueItem
from issue_bridge.models.routing_rule import RoutingRule
from issue_bridge.models.webhook_event import WebhookEvent
from issue_bridge.schemas.events import SentryWebhookPayload
from issue_bridge.templates.slack_templates import (
    circuit_open_message,
    dead_letter_message,
    ticket_created_message,
)
from issue_bridge.templates.ticket_templates import TICKET_STATUS_MAP, error_hash

logger = logging.getLogger(__name__)

# Fields sent when patching an existing ticket
_UPDATE_FIELDS = ("title", "description", "status", "priority", "labels", "comment", "source_status")


def resolve_ticket_action(queued_action: str, mapping: IssueMapping | None) -> str | None:
    """Turn the queued action into an API action: ``create``, ``update`` or None (nothing to do)."""
    if mapping is not None:
        return "update"
    if queued_action == "resolve":
        return None
    return "create"


def _request_body(action: str, ticket_payload: dict) -> dict:
    if action == "create":
        return dict(ticket_payload)
    return {key: ticket_payload[key] for key in _UPDATE_FIELDS if key in ticket_payload}


def _in_cooldown(config: BridgeConfig, mapping: IssueMapping, now: datetime) -> bool:
    synced = as_utc(mapping.last_synced_at)
    if synced is None or not config.cooldown_same_issue_minutes:
        return False
    return now < synced + timedelta(minutes=config.cooldown_same_issue_minutes)


async def _notify(tenant_id: str, severity: str, message: str, channel: str | None = None) -> None:
    """Best-effort Slack alert; errors are logged and dropped."""
    if not settings.slack_bot_token:
        logger.debug("Slack not configured; dropping %s alert for tenant %s", severity, tenant_id)
        return
    try:
        slack = SlackClient()
        await slack.notify(tenant_id, severity, message, channel=channel)
        await slack.close()
    except Exception as exc:
        logger.error("Slack notification failed for tenant %s: %s", tenant_id, exc)
        with suppress(Exception):
            await slack.close()  # type: ignore[possibly-undefined]


def _latency_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000.0


async def _dead_letter_without_call(
    db: AsyncSession,
    item: BridgeQueueItem,
    event: WebhookEvent,
    worker_id: str,
    reason: str,
    now: datetime,
) -> str:
    await fail_item(db, item, worker_id, reason, force_dead_letter=True, now=now)
    await mark_event(db, event, "failed", error_message=reason, now=now)
    await record_outcome(db, item.tenant_id, "dead_lettered", now=now)
    await db.commit()
    await _notify(item.tenant_id, "warning", dead_letter_message(item.source_issue_id, item.attempt_count, reason))
    return "dead_lettered"


async def _handle_failure(
    db: AsyncSession,
    item: BridgeQueueItem,
    event: WebhookEvent,
    config: BridgeConfig,
    worker_id: str,
    exc: Exception,
    now: datetime,
) -> str:
    error = str(exc) or exc.__class__.__name__
    details = dict(getattr(exc, "details", None) or {})
    details.setdefault("exception", exc.__class__.__name__)
    logger.error("Ticket sync failed for queue item %d (issue %s): %s", item.id, item.source_issue_id, error)

    tripped = await record_failure(db, config, now=now)
    dead = await fail_item(
        db,
        item,
        worker_id,
        error,
        force_dead_letter=isinstance(exc, PermanentTicketError),
        error_details=details,
        now=now,
    )
    await record_outcome(db, item.tenant_id, "failed", now=now)
    if dead is not None:
        await mark_event(db, event, "failed", error_message=error, now=now)
        await record_outcome(db, item.tenant_id, "dead_lettered", now=now)
    await db.commit()

    if tripped:
        await _notify(
            item.tenant_id,
            "critical",
            circuit_open_message(
                item.tenant_id,
                config.circuit_breaker_failure_threshold,
                config.circuit_breaker_cooldown_minutes,
            ),
        )
    if dead is not None:
        await _notify(item.tenant_id, "warning", dead_letter_message(item.source_issue_id, item.attempt_count, error))
        return "dead_lettered"
    return "retry"


async def process_claimed_item(
    db: AsyncSession,
    item: BridgeQueueItem,
    worker_id: str,
    now: datetime | None = None,
) -> str:
    """Process one item claimed by ``worker_id`` and commit the outcome.

    Returns one of ``created``, ``updated``, ``deduplicated``, ``skipped``,
    ``held``, ``retry`` or ``dead_lettered``.
    """
    started = time.monotonic()
    now = now or utcnow()
    event = await get_event(db, item.tenant_id, item.webhook_event_id)
    config = await find_bridge_config(db, item.tenant_id)

    if config is None or not config.enabled:
        return await _dead_letter_without_call(db, item, event, worker_id, "bridge disabled", now)

    try:
        await require_admission(db, config, now)
    except AdmissionDenied as denied:
        hold_until = denied.retry_at or now + timedelta(seconds=settings.admission_hold_seconds)
        await release_item(db, item, worker_id, hold_until, reason=denied.message)
        await db.commit()
        return "held"

    mapping = await get_mapping(db, item.tenant_id, item.source_issue_id)
    action = resolve_ticket_action(item.ticket_action, mapping)
    source = SentryWebhookPayload.model_validate(event.raw_payload)
    release = source.data.event.release if source.data.event else None

    if action is None:
        await complete_item(db, item, worker_id, None, now=now)
        await mark_event(db, event, "skipped", error_message="no ticket to resolve", now=now)
        await record_outcome(db, item.tenant_id, "skipped", now=now)
        await db.commit()
        return "skipped"

    if action == "update" and item.ticket_action == "create" and _in_cooldown(config, mapping, now):
        await touch_mapping(db, item.tenant_id, item.source_issue_id, event_id=item.source_event_id, release=release, now=now)
        await complete_item(db, item, worker_id, mapping.ticket_id, now=now)
        await mark_event(db, event, "processed", now=now)
        await record_outcome(db, item.tenant_id, "processed", latency_ms=_latency_ms(started), now=now)
        await db.commit()
        logger.info("Issue %s synced recently; counted event without a ticket update", item.source_issue_id)
        return "deduplicated"

    try:
        client = TicketClient()
        ticket_id = await client.create_or_update_ticket(
            _request_body(action, item.ticket_payload),
            ticket_id=mapping.ticket_id if mapping is not None else None,
        )
        await client.close()
    except Exception as exc:
        with suppress(Exception):
            await client.close()  # type: ignore[possibly-undefined]
        return await _handle_failure(db, item, event, config, worker_id, exc, now)

    created = action == "create"
    source_status = item.ticket_payload.get("source_status", "unresolved")
    issue = source.data.issue
    await complete_item(db, item, worker_id, ticket_id, created_ticket=created, now=now)
    await record_ticket_sync(
        db,
        item.tenant_id,
        item.source_issue_id,
        ticket_id=ticket_id,
        ticket_project_id=item.target_project_id,
        source_project=issue.project.slug or None,
        error_hash=error_hash(issue.error_type, issue.error_message, issue.culprit),
        source_status=source_status,
        ticket_status=TICKET_STATUS_MAP.get(source_status),
        event_id=item.source_event_id,
        release=release,
        now=now,
    )
    await record_success(db, config)
    await mark_event(db, event, "processed", now=now)
    await record_outcome(db, item.tenant_id, "processed", latency_ms=_latency_ms(started), now=now)
    await record_outcome(db, item.tenant_id, "ticket_created" if created else "ticket_updated", now=now)
    await db.commit()

    if created and item.routing_rule_id is not None:
        rule = await db.get(RoutingRule, item.routing_rule_id)
        if rule is not None and rule.notify_slack_channel:
            await _notify(
                item.tenant_id,
                "info",
                ticket_created_message(
                    item.source_issue_id,
                    ticket_id,
                    item.ticket_payload.get("title", ""),
                    item.target_priority,
                ),
                channel=rule.notify_slack_channel,
            )
    return "created" if created else "updated"


async def run_batch(
    worker_id: str,
    batch_size: int | None = None,
    now: datetime | None = None,
    session_factory: async_sessionmaker = async_session,
) -> dict[str, int]:
    """Sweep expired leases, claim a batch and process each item in its own session."""
    async with session_factory() as db:
        await recover_stale_claims(db, settings.lease_seconds, now=now)
        await db.commit()
        items = await claim_batch(db, worker_id, batch_size or settings.claim_batch_size, now=now)

    outcomes: dict[str, int] = {}
    for item in items:
        async with session_factory() as db:
            db.add(item)
            try:
                outcome = await process_claimed_item(db, item, worker_id, now=now)
            except StaleClaim as exc:
                await db.rollback()
                logger.warning("Lost claim on queue item %d: %s", item.id, exc)
                outcome = "stale"
            except Exception:
                # The lease sweep returns the item to pending once it expires.
                await db.rollback()
                logger.exception("Unexpected error processing queue item %d", item.id)
                outcome = "error"
        outcomes[outcome] = outcomes.get(outcome, 0) + 1
    return outcomes
