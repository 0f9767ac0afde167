"""Tests for queue claiming, retry backoff, leases and dead-lettering."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from issue_bridge.database import Base, async_session
from issue_bridge.exceptions import StaleClaim
from issue_bridge.handlers.bridge_queue import (
    backoff_delay,
    claim_batch,
    complete_item,
    enqueue,
    fail_item,
    recover_stale_claims,
    release_item,
)
from issue_bridge.models.dead_letter import DeadLetterItem
from issue_bridge.models.queue_item import BridgeQueueItem
from issue_bridge.models.webhook_event import WebhookEvent
from issue_bridge.schemas.bridge import RoutingDecision

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


async def _enqueue(db, n: int = 1, tenant_id: str = "t1", now: datetime = NOW, **kwargs) -> BridgeQueueItem:
    event = WebhookEvent(
        tenant_id=tenant_id,
        source_event_id=f"evt-{tenant_id}-{n}",
        source_issue_id=f"issue-{n}",
        event_type="created",
        raw_payload={},
        status="processing",
        dedupe_key=f"{tenant_id}:evt-{n}",
    )
    db.add(event)
    await db.flush()
    return await enqueue(
        db,
        tenant_id=tenant_id,
        webhook_event_id=event.id,
        source_issue_id=event.source_issue_id,
        source_event_id=event.source_event_id,
        event_type="created",
        decision=RoutingDecision(project_id="P1", priority="high"),
        ticket_payload={"title": f"issue {n}"},
        now=now,
        **kwargs,
    )


async def _reload(item_id: int) -> BridgeQueueItem:
    async with async_session() as db:
        return (await db.execute(select(BridgeQueueItem).where(BridgeQueueItem.id == item_id))).scalar_one()


async def test_claim_flips_item_to_processing():
    async with async_session() as db:
        item = await _enqueue(db)
        await db.commit()

        claimed = await claim_batch(db, "worker-a", 10, now=NOW)

    assert [c.id for c in claimed] == [item.id]
    assert claimed[0].status == "processing"
    assert claimed[0].claimed_by == "worker-a"
    assert claimed[0].attempt_count == 1
    assert claimed[0].claim_token


async def test_claimed_item_is_not_claimed_again():
    async with async_session() as db:
        await _enqueue(db)
        await db.commit()
        first = await claim_batch(db, "worker-a", 10, now=NOW)
        second = await claim_batch(db, "worker-b", 10, now=NOW)

    assert len(first) == 1
    assert second == []


async def test_claim_respects_due_time_order_and_batch_size():
    async with async_session() as db:
        oldest = await _enqueue(db, 1, now=NOW - timedelta(minutes=3))
        middle = await _enqueue(db, 2, now=NOW - timedelta(minutes=2))
        await _enqueue(db, 3, now=NOW - timedelta(minutes=1))
        await _enqueue(db, 4, not_before=NOW + timedelta(minutes=5))
        await db.commit()

        claimed = await claim_batch(db, "worker-a", 2, now=NOW)
        rest = await claim_batch(db, "worker-a", 10, now=NOW)

    assert [c.id for c in claimed] == [oldest.id, middle.id]
    assert len(rest) == 1


async def test_claim_can_be_scoped_to_a_tenant():
    async with async_session() as db:
        await _enqueue(db, 1, tenant_id="t1")
        other = await _enqueue(db, 1, tenant_id="t2")
        await db.commit()

        claimed = await claim_batch(db, "worker-a", 10, now=NOW, tenant_id="t2")

    assert [c.id for c in claimed] == [other.id]


async def test_complete_records_ticket():
    async with async_session() as db:
        await _enqueue(db)
        await db.commit()
        [item] = await claim_batch(db, "worker-a", 10, now=NOW)

        await complete_item(db, item, "worker-a", "TICKET-1", created_ticket=True, now=NOW)
        await db.commit()

    stored = await _reload(item.id)
    assert stored.status == "completed"
    assert stored.ticket_id == "TICKET-1"
    assert stored.created_ticket is True
    assert stored.processed_at is not None


async def test_backoff_doubles_and_dead_letters_at_max_attempts():
    async with async_session() as db:
        item = await _enqueue(db, max_attempts=3)
        await db.commit()

        clock = NOW
        gaps = []
        dead = None
        for _ in range(3):
            [claimed] = await claim_batch(db, "worker-a", 1, now=clock)
            dead = await fail_item(db, claimed, "worker-a", "ticket API error (503)", now=clock)
            await db.commit()
            if dead is not None:
                break
            stored = await _reload(item.id)
            next_at = stored.next_attempt_at.replace(tzinfo=timezone.utc)
            gaps.append(next_at - clock)
            clock = next_at

    assert gaps == [timedelta(minutes=2), timedelta(minutes=4)]
    assert dead is not None
    assert dead.attempt_count == 3
    assert dead.failure_reason == "ticket API error (503)"
    assert dead.original_payload["target_project_id"] == "P1"
    assert dead.original_payload["ticket_payload"] == {"title": "issue 1"}
    assert (await _reload(item.id)).status == "dead_lettered"


def test_backoff_delay_is_exponential():
    assert [backoff_delay(n) for n in (1, 2, 3)] == [
        timedelta(minutes=2),
        timedelta(minutes=4),
        timedelta(minutes=8),
    ]


async def test_forced_failure_dead_letters_on_first_attempt():
    async with async_session() as db:
        await _enqueue(db, max_attempts=3)
        await db.commit()
        [item] = await claim_batch(db, "worker-a", 1, now=NOW)

        dead = await fail_item(db, item, "worker-a", "ticket API rejected request (400)", force_dead_letter=True, now=NOW)
        await db.commit()

        records = (await db.execute(select(DeadLetterItem))).scalars().all()

    assert dead is not None
    assert item.status == "dead_lettered"
    assert len(records) == 1
    assert records[0].attempt_count == 1


async def test_release_does_not_consume_an_attempt():
    async with async_session() as db:
        await _enqueue(db)
        await db.commit()
        [item] = await claim_batch(db, "worker-a", 1, now=NOW)

        hold = NOW + timedelta(minutes=15)
        await release_item(db, item, "worker-a", hold, reason="admission denied: circuit-open")
        await db.commit()

        assert await claim_batch(db, "worker-a", 1, now=NOW) == []
        [again] = await claim_batch(db, "worker-a", 1, now=hold)

    assert again.attempt_count == 1


async def test_expired_lease_is_recovered_and_old_holder_loses_claim():
    async with async_session() as db:
        await _enqueue(db)
        await db.commit()
        [item] = await claim_batch(db, "worker-a", 1, now=NOW)

        assert await recover_stale_claims(db, lease_seconds=300, now=NOW + timedelta(seconds=299)) == 0
        recovered = await recover_stale_claims(db, lease_seconds=300, now=NOW + timedelta(seconds=301))
        await db.commit()

        stored = await _reload(item.id)
        assert recovered == 1
        assert stored.status == "pending"
        assert stored.attempt_count == 1

        with pytest.raises(StaleClaim):
            await complete_item(db, item, "worker-a", "TICKET-1", now=NOW)


async def test_reclaimed_item_rejects_the_previous_worker():
    async with async_session() as db:
        await _enqueue(db)
        await db.commit()
        [stale] = await claim_batch(db, "worker-a", 1, now=NOW)
        await recover_stale_claims(db, lease_seconds=60, now=NOW + timedelta(minutes=5))
        await db.commit()
        [fresh] = await claim_batch(db, "worker-b", 1, now=NOW + timedelta(minutes=5))

    async with async_session() as db:
        with pytest.raises(StaleClaim):
            await fail_item(db, stale, "worker-a", "late failure", now=NOW)

    assert fresh.claimed_by == "worker-b"
    assert fresh.attempt_count == 2


async def test_concurrent_claimers_never_share_an_item(tmp_path):
    """Claimers on separate connections always receive disjoint items."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}",
        connect_args={"timeout": 30},
    )
    sessions = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with sessions() as db:
        expected = {(await _enqueue(db, n)).id for n in range(30)}
        await db.commit()

    async def claimer(worker_id: str) -> list[int]:
        ids: list[int] = []
        while True:
            async with sessions() as db:
                batch = await claim_batch(db, worker_id, 3, now=NOW)
            if not batch:
                return ids
            ids.extend(item.id for item in batch)
            await asyncio.sleep(0)

    try:
        results = await asyncio.gather(*(claimer(f"worker-{i}") for i in range(6)))
    finally:
        await engine.dispose()

    claimed = [item_id for ids in results for item_id in ids]
    assert len(claimed) == len(set(claimed))
    assert set(claimed) == expected
