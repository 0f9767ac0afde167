"""Tests for hourly metrics rollups."""

from datetime import datetime, timedelta, timezone

import pytest

from issue_bridge.database import as_utc, async_session
from issue_bridge.handlers.metrics import bucket_bounds, get_buckets, record_outcome

NOW = datetime(2026, 10, 19, 10, 42, 7, tzinfo=timezone.utc)
HOUR = datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)


def test_bucket_bounds_truncate_to_the_hour():
    assert bucket_bounds(NOW) == (HOUR, HOUR + timedelta(hours=1))


async def test_outcomes_accumulate_in_one_bucket():
    async with async_session() as db:
        await record_outcome(db, "t1", "received", now=NOW)
        await record_outcome(db, "t1", "received", now=NOW)
        await record_outcome(db, "t1", "ticket_created", now=NOW)
        await record_outcome(db, "t1", "dead_lettered", now=NOW)
        await db.commit()

        [bucket] = await get_buckets(db, "t1", HOUR, HOUR + timedelta(hours=1))

    assert bucket.webhooks_received == 2
    assert bucket.tickets_created == 1
    assert bucket.dead_lettered == 1
    assert bucket.webhooks_failed == 0
    assert as_utc(bucket.bucket_start) == HOUR


async def test_latency_tracks_average_and_max():
    async with async_session() as db:
        await record_outcome(db, "t1", "processed", latency_ms=100.0, now=NOW)
        await record_outcome(db, "t1", "processed", latency_ms=300.0, now=NOW)
        await db.commit()

        [bucket] = await get_buckets(db, "t1", HOUR, HOUR + timedelta(hours=1))

    assert bucket.webhooks_processed == 2
    assert bucket.avg_processing_time_ms == pytest.approx(200.0)
    assert bucket.max_processing_time_ms == pytest.approx(300.0)


async def test_hours_and_tenants_get_separate_buckets():
    async with async_session() as db:
        await record_outcome(db, "t1", "received", now=NOW)
        await record_outcome(db, "t1", "received", now=NOW + timedelta(hours=1))
        await record_outcome(db, "t2", "received", now=NOW)
        await db.commit()

        day = await get_buckets(db, "t1", HOUR - timedelta(hours=10), HOUR + timedelta(hours=10))
        first_hour = await get_buckets(db, "t1", HOUR, HOUR + timedelta(hours=1))

    assert [as_utc(b.bucket_start) for b in day] == [HOUR, HOUR + timedelta(hours=1)]
    assert len(first_hour) == 1


async def test_unknown_outcome_is_rejected():
    async with async_session() as db:
        with pytest.raises(ValueError):
            await record_outcome(db, "t1", "exploded", now=NOW)
