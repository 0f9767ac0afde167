"""Intake pipeline for Sentry issue webhooks.

Flow per delivery:
1. Look up the tenant's bridge config (unknown tenant -> 404).
2. Ingest the event; a redelivery stops here.
3. Skip disabled bridges, unsupported actions and resolves for issues that
   never got a ticket.
4. Route the event and build the ticket payload.
5. Hold new issues for triage when the tenant asks for it, the routing
   confidence is low, or the issue is spiking.
6. Otherwise enqueue for the worker, held back if admission is denied.

Everything is committed in one transaction at the end; nothing here talks to
the ticket system.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from issue_bridge.config import settings
from issue_bridge.database import utcnow
from issue_bridge.handlers.admin import get_bridge_config
from issue_bridge.handlers.admission import check_admission
from issue_bridge.handlers.bridge_queue import enqueue
from issue_bridge.handlers.event_store import ingest, mark_event
from issue_bridge.handlers.issue_mapping import get_mapping
from issue_bridge.handlers.metrics import record_outcome
from issue_bridge.handlers.routing import normalize_event, route_event
from issue_bridge.handlers.triage import bump_triage_item, find_pending_triage, submit_for_triage
from issue_bridge.models.bridge_config import BridgeConfig
from issue_bridge.models.webhook_event import WebhookEvent
from issue_bridge.schemas.bridge import RoutingDecision
from issue_bridge.schemas.events import SentryWebhookPayload, WebhookResponse
from issue_bridge.templates.ticket_templates import build_action_ticket_payload, decision_for_action

logger = logging.getLogger(__name__)

# Sentry issue action -> queue ticket action
TICKET_ACTIONS = {
    "created": "create",
    "resolved": "resolve",
    "unresolved": "reopen",
    "regression": "regression",
}


async def _skip(
    db: AsyncSession,
    event: WebhookEvent,
    reason: str,
    now: datetime,
) -> WebhookResponse:
    await mark_event(db, event, "skipped", error_message=reason, now=now)
    await record_outcome(db, event.tenant_id, "skipped", now=now)
    await db.commit()
    logger.info("Webhook event %d skipped: %s", event.id, reason)
    return WebhookResponse(status="skipped", event_id=event.id, reason=reason)


async def _is_spiking(db: AsyncSession, config: BridgeConfig, source_issue_id: str, now: datetime) -> bool:
    since = now - timedelta(minutes=config.spike_threshold_minutes)
    result = await db.execute(
        select(func.count(WebhookEvent.id)).where(
            WebhookEvent.tenant_id == config.tenant_id,
            WebhookEvent.source_issue_id == source_issue_id,
            WebhookEvent.received_at >= since,
        )
    )
    return result.scalar_one() >= config.spike_threshold_count


async def _triage_reason(
    db: AsyncSession,
    config: BridgeConfig,
    decision: RoutingDecision,
    source_issue_id: str,
    now: datetime,
) -> str | None:
    if config.triage_mode_enabled:
        return "triage-mode"
    if decision.confidence < config.triage_confidence_threshold:
        return "low-confidence"
    if await _is_spiking(db, config, source_issue_id, now):
        return "spike"
    return None


async def handle_sentry_webhook(
    db: AsyncSession,
    tenant_id: str,
    payload: SentryWebhookPayload,
    raw_payload: dict | None = None,
    now: datetime | None = None,
) -> WebhookResponse:
    """Ingest one Sentry issue webhook and route it to the queue or triage."""
    now = now or utcnow()
    config = await get_bridge_config(db, tenant_id)
    issue = payload.data.issue

    event, created = await ingest(
        db,
        tenant_id,
        payload.source_event_id,
        issue.id,
        payload.action,
        raw_payload if raw_payload is not None else payload.model_dump(mode="json", by_alias=True),
        now=now,
    )
    if not created:
        await db.commit()
        return WebhookResponse(status="duplicate", event_id=event.id)
    await record_outcome(db, tenant_id, "received", now=now)

    if not config.enabled:
        return await _skip(db, event, "bridge disabled", now)
    ticket_action = TICKET_ACTIONS.get(payload.action)
    if ticket_action is None:
        return await _skip(db, event, f"unsupported action {payload.action!r}", now)

    mapping = await get_mapping(db, tenant_id, issue.id)
    if ticket_action == "resolve" and mapping is None:
        return await _skip(db, event, "no ticket to resolve", now)

    allowlist = config.allowlisted_tags or settings.default_allowlisted_tags
    decision = await route_event(db, config, normalize_event(payload, allowlist))
    if decision is None:
        if mapping is None:
            return await _skip(db, event, "no routing destination", now)
        decision = RoutingDecision(
            project_id=mapping.ticket_project_id,
            priority=config.default_priority or "medium",
        )
    decision = decision_for_action(decision, ticket_action)
    ticket_payload = build_action_ticket_payload(payload, decision, ticket_action, allowlist, now=now)

    if mapping is None:
        pending = await find_pending_triage(db, tenant_id, issue.id)
        if pending is not None:
            await bump_triage_item(db, pending)
            response = await _skip(db, event, "pending triage", now)
            response.triage_item_id = pending.id
            return response

        reason = await _triage_reason(db, config, decision, issue.id, now)
        if reason is not None:
            item = await submit_for_triage(db, event, payload, decision, ticket_payload, reason, now=now)
            await mark_event(db, event, "processing", now=now)
            await record_outcome(db, tenant_id, "triaged", now=now)
            await db.commit()
            return WebhookResponse(
                status="triaged",
                event_id=event.id,
                triage_item_id=item.id,
                project_id=decision.project_id,
                priority=decision.priority,
                matched_rule_id=decision.matched_rule_id,
                reason=reason,
            )

    admission = await check_admission(db, config, now)
    hold_until = None
    if not admission.allowed:
        hold_until = admission.retry_at or now + timedelta(seconds=settings.admission_hold_seconds)
        logger.info("Issue %s held until %s: %s", issue.id, hold_until.isoformat(), admission.reason)

    item = await enqueue(
        db,
        tenant_id=tenant_id,
        webhook_event_id=event.id,
        source_issue_id=issue.id,
        source_event_id=event.source_event_id,
        event_type=payload.action,
        decision=decision,
        ticket_payload=ticket_payload,
        ticket_action=ticket_action,
        not_before=hold_until,
        now=now,
    )
    await mark_event(db, event, "processing", now=now)
    await db.commit()
    return WebhookResponse(
        status="held" if hold_until else "queued",
        event_id=event.id,
        queue_item_id=item.id,
        project_id=decision.project_id,
        priority=decision.priority,
        matched_rule_id=decision.matched_rule_id,
        reason=admission.reason,
    )
