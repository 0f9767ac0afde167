"""Hourly per-tenant throughput and latency rollups."""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from issue_bridge.database import insert_ignore_conflict, utcnow
from issue_bridge.models.metrics_bucket import MetricsBucket

OUTCOME_COLUMNS = {
    "received": "webhooks_received",
    "processed": "webhooks_processed",
    "failed": "webhooks_failed",
    "skipped": "webhooks_skipped",
    "ticket_created": "tickets_created",
    "ticket_updated": "tickets_updated",
    "triaged": "tickets_triaged",
    "dead_lettered": "dead_lettered",
}


def bucket_bounds(when: datetime) -> tuple[datetime, datetime]:
    start = when.replace(minute=0, second=0, microsecond=0)
    return start, start + timedelta(hours=1)


async def record_outcome(
    db: AsyncSession,
    tenant_id: str,
    kind: str,
    latency_ms: float | None = None,
    now: datetime | None = None,
) -> None:
    """Increment ``kind`` in the current hour's bucket.

    ``latency_ms`` feeds the running average and the maximum. Both steps are
    single statements, so concurrent writers never lose an increment.
    """
    column_name = OUTCOME_COLUMNS.get(kind)
    if column_name is None:
        raise ValueError(f"unknown metrics outcome {kind!r}")
    start, end = bucket_bounds(now or utcnow())

    await insert_ignore_conflict(
        db,
        MetricsBucket.__table__,
        {"tenant_id": tenant_id, "bucket_start": start, "bucket_end": end},
        index_elements=["tenant_id", "bucket_start"],
    )

    column = getattr(MetricsBucket, column_name)
    values = {column_name: column + 1}
    if latency_ms is not None:
        samples = MetricsBucket.latency_samples
        values["latency_samples"] = samples + 1
        values["avg_processing_time_ms"] = (
            MetricsBucket.avg_processing_time_ms * samples + latency_ms
        ) / (samples + 1)
        values["max_processing_time_ms"] = case(
            (MetricsBucket.max_processing_time_ms < latency_ms, latency_ms),
            else_=MetricsBucket.max_processing_time_ms,
        )

    await db.execute(
        update(MetricsBucket)
        .where(MetricsBucket.tenant_id == tenant_id, MetricsBucket.bucket_start == start)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


async def get_buckets(
    db: AsyncSession,
    tenant_id: str,
    start: datetime,
    end: datetime,
) -> list[MetricsBucket]:
    result = await db.execute(
        select(MetricsBucket)
        .where(
            MetricsBucket.tenant_id == tenant_id,
            MetricsBucket.bucket_start >= start,
            MetricsBucket.bucket_start < end,
        )
        .order_by(MetricsBucket.bucket_start)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
