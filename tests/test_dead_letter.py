"""Tests for dead-letter replay and discard."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from issue_bridge.database import async_session
from issue_bridge.exceptions import InvalidTransition, PermanentTicketError, ResourceNotFound
from issue_bridge.handlers.admin import create_routing_rule, upsert_bridge_config
from issue_bridge.handlers.bridge_queue import claim_batch
from issue_bridge.handlers.dead_letter import discard, list_dead_letters, replay
from issue_bridge.handlers.issue_mapping import get_mapping
from issue_bridge.handlers.pipeline import handle_sentry_webhook
from issue_bridge.handlers.processor import run_batch
from issue_bridge.models.dead_letter import DeadLetterItem
from issue_bridge.schemas.bridge import BridgeConfigIn, RoutingRuleIn
from issue_bridge.schemas.events import SentryWebhookPayload

NOW = datetime(2026, 10, 19, 14, 0, tzinfo=timezone.utc)

PAYLOAD = {
    "action": "created",
    "data": {
        "issue": {
            "id": "1001",
            "shortId": "API-7",
            "title": "PaymentDeclined: card_declined",
            "culprit": "payments.charge",
            "project": {"slug": "payments"},
            "metadata": {"type": "PaymentDeclined", "value": "card_declined"},
        },
        "event": {"eventID": "evt-1", "environment": "production"},
    },
}


async def _dead_letter(tenant_id: str = "t1") -> int:
    async with async_session() as db:
        await upsert_bridge_config(
            db,
            tenant_id,
            BridgeConfigIn(enabled=True, default_project_id="DEFAULT", triage_mode_enabled=False),
        )
        await create_routing_rule(
            db, tenant_id, RoutingRuleIn(name="payments", match_source_project="payments", target_project_id="PAY")
        )
        await handle_sentry_webhook(db, tenant_id, SentryWebhookPayload.model_validate(PAYLOAD), now=NOW)

    tickets = AsyncMock()
    tickets.create_or_update_ticket.side_effect = PermanentTicketError("ticket API rejected request (400)")
    with patch("issue_bridge.handlers.processor.TicketClient", return_value=tickets):
        assert await run_batch("worker-a", now=NOW) == {"dead_lettered": 1}

    async with async_session() as db:
        record = (
            await db.execute(select(DeadLetterItem).where(DeadLetterItem.tenant_id == tenant_id))
        ).scalar_one()
    return record.id


async def test_replay_creates_fresh_pending_item():
    dead_id = await _dead_letter()
    later = NOW + timedelta(hours=1)

    async with async_session() as db:
        record, item = await replay(db, "t1", dead_id, "ops@acme", notes="payload fixed upstream", now=later)
        await db.commit()

        claimed = await claim_batch(db, "worker-b", 10, now=later)

    assert record.status == "replayed"
    assert record.resolved_by == "ops@acme"
    assert record.replayed_queue_item_id == item.id
    assert item.attempt_count == 0
    assert item.target_project_id == "PAY"
    assert item.ticket_payload["title"].startswith("[API-7]")
    assert [c.id for c in claimed] == [item.id]


async def test_replay_twice_is_rejected():
    dead_id = await _dead_letter()
    async with async_session() as db:
        await replay(db, "t1", dead_id, "ops@acme", now=NOW)
        await db.commit()

        with pytest.raises(InvalidTransition):
            await replay(db, "t1", dead_id, "ops@acme", now=NOW)


async def test_discard_is_terminal():
    dead_id = await _dead_letter()
    async with async_session() as db:
        record = await discard(db, "t1", dead_id, "ops@acme", notes="noise", now=NOW)
        await db.commit()

        with pytest.raises(InvalidTransition):
            await replay(db, "t1", dead_id, "ops@acme", now=NOW)

    assert record.status == "discarded"
    assert record.resolution_notes == "noise"


async def test_replay_with_reroute_uses_current_rules():
    dead_id = await _dead_letter()
    async with async_session() as db:
        await create_routing_rule(
            db,
            "t1",
            RoutingRuleIn(
                name="declines",
                priority=1,
                match_error_type="PaymentDeclined",
                target_project_id="RISK",
                target_priority="urgent",
            ),
        )
        await db.commit()

        _, item = await replay(db, "t1", dead_id, "ops@acme", reroute=True, now=NOW)

    assert item.target_project_id == "RISK"
    assert item.target_priority == "urgent"
    assert item.ticket_payload["project_id"] == "RISK"


async def test_rerouted_resolve_still_closes_the_ticket():
    async with async_session() as db:
        await upsert_bridge_config(
            db, "t1", BridgeConfigIn(enabled=True, default_project_id="DEFAULT", triage_mode_enabled=False)
        )
        await create_routing_rule(
            db, "t1", RoutingRuleIn(name="payments", match_source_project="payments", target_project_id="PAY")
        )
        await handle_sentry_webhook(db, "t1", SentryWebhookPayload.model_validate(PAYLOAD), now=NOW)

    created = AsyncMock()
    created.create_or_update_ticket.return_value = "TICKET-1"
    with patch("issue_bridge.handlers.processor.TicketClient", return_value=created):
        assert await run_batch("worker-a", now=NOW) == {"created": 1}

    resolved = {
        "action": "resolved",
        "data": {
            "issue": {**PAYLOAD["data"]["issue"], "status": "resolved"},
            "event": {"eventID": "evt-2", "environment": "production"},
        },
    }
    later = NOW + timedelta(minutes=10)
    async with async_session() as db:
        response = await handle_sentry_webhook(db, "t1", SentryWebhookPayload.model_validate(resolved), now=later)
    assert response.status == "queued"

    rejected = AsyncMock()
    rejected.create_or_update_ticket.side_effect = PermanentTicketError("ticket API rejected request (422)")
    with patch("issue_bridge.handlers.processor.TicketClient", return_value=rejected):
        assert await run_batch("worker-a", now=later) == {"dead_lettered": 1}

    replay_at = NOW + timedelta(hours=1)
    async with async_session() as db:
        record = (
            await db.execute(select(DeadLetterItem).where(DeadLetterItem.event_type == "resolved"))
        ).scalar_one()
        _, item = await replay(db, "t1", record.id, "ops@acme", reroute=True, now=replay_at)
        await db.commit()

    assert item.ticket_action == "resolve"
    assert item.ticket_payload["status"] == "done"
    assert item.ticket_payload["source_status"] == "resolved"

    patched = AsyncMock()
    patched.create_or_update_ticket.return_value = "TICKET-1"
    with patch("issue_bridge.handlers.processor.TicketClient", return_value=patched):
        assert await run_batch("worker-b", now=replay_at) == {"updated": 1}

    body = patched.create_or_update_ticket.call_args.args[0]
    assert body["status"] == "done"
    assert patched.create_or_update_ticket.call_args.kwargs["ticket_id"] == "TICKET-1"
    async with async_session() as db:
        mapping = await get_mapping(db, "t1", "1001")
    assert mapping.source_status == "resolved"
    assert mapping.ticket_status == "done"


async def test_records_are_tenant_scoped():
    dead_id = await _dead_letter("t1")
    async with async_session() as db:
        assert await list_dead_letters(db, "t2") == []
        assert [r.id for r in await list_dead_letters(db, "t1")] == [dead_id]

        with pytest.raises(ResourceNotFound):
            await replay(db, "t2", dead_id, "ops@acme")
