"""Tests for idempotent event ingestion."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from issue_bridge.database import async_session
from issue_bridge.exceptions import InvalidTransition
from issue_bridge.handlers.event_store import dedupe_key, ingest, mark_event
from issue_bridge.models.webhook_event import WebhookEvent

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _payload(**overrides) -> dict:
    payload = {
        "action": "created",
        "data": {"issue": {"id": "1001", "title": "DatabaseTimeout: query exceeded 30s"}},
    }
    payload.update(overrides)
    return payload


async def _count_events() -> int:
    async with async_session() as db:
        return (await db.execute(select(func.count(WebhookEvent.id)))).scalar_one()


async def test_ingest_records_received_event():
    async with async_session() as db:
        event, created = await ingest(db, "t1", "evt-1", "1001", "created", _payload(), now=NOW)
        await db.commit()

    assert created is True
    assert event.status == "received"
    assert event.dedupe_key == dedupe_key("t1", "evt-1") == "t1:evt-1"
    assert event.source_issue_id == "1001"
    assert event.raw_payload["data"]["issue"]["id"] == "1001"


async def test_duplicate_ingest_returns_existing_row():
    """Redelivery of the same event is a no-op that hands back the first row."""
    async with async_session() as db:
        first, created_first = await ingest(db, "t1", "evt-1", "1001", "created", _payload(), now=NOW)
        await db.commit()
    async with async_session() as db:
        second, created_second = await ingest(db, "t1", "evt-1", "1001", "created", _payload(), now=NOW)
        await db.commit()

    assert created_first is True
    assert created_second is False
    assert second.id == first.id
    assert await _count_events() == 1


async def test_same_event_id_in_two_tenants_is_not_a_duplicate():
    async with async_session() as db:
        _, created_a = await ingest(db, "t1", "evt-1", "1001", "created", _payload())
        _, created_b = await ingest(db, "t2", "evt-1", "1001", "created", _payload())
        await db.commit()

    assert created_a and created_b
    assert await _count_events() == 2


async def test_ingest_redacts_stored_payload():
    payload = _payload()
    payload["data"]["issue"]["title"] = "Login failed for jane.doe@example.com"
    payload["data"]["token"] = "super-secret"

    async with async_session() as db:
        event, _ = await ingest(db, "t1", "evt-2", "1001", "created", payload)
        await db.commit()

    assert "jane.doe@example.com" not in event.raw_payload["data"]["issue"]["title"]
    assert "[EMAIL_REDACTED]" in event.raw_payload["data"]["issue"]["title"]
    assert event.raw_payload["data"]["token"] == "[REDACTED]"


async def test_mark_event_terminal_status_stamps_processed_at():
    async with async_session() as db:
        event, _ = await ingest(db, "t1", "evt-3", "1001", "created", _payload(), now=NOW)
        await mark_event(db, event, "processing", now=NOW)
        assert event.processed_at is None

        await mark_event(db, event, "skipped", error_message="bridge disabled", now=NOW)
        await db.commit()

    assert event.status == "skipped"
    assert event.error_message == "bridge disabled"
    assert event.processed_at is not None


async def test_mark_event_rejects_unknown_status():
    async with async_session() as db:
        event, _ = await ingest(db, "t1", "evt-4", "1001", "created", _payload())
        with pytest.raises(InvalidTransition):
            await mark_event(db, event, "archived")
