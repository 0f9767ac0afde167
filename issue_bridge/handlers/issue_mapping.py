"""Source issue -> ticket correlation.

The mapping is the idempotency anchor for recurring errors: once an issue has
a ticket, later events update that ticket and bump the counters here instead
of creating another one.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from issue_bridge.database import insert_ignore_conflict, utcnow
from issue_bridge.models.issue_mapping import IssueMapping

logger = logging.getLogger(__name__)


async def get_mapping(db: AsyncSession, tenant_id: str, source_issue_id: str) -> IssueMapping | None:
    result = await db.execute(
        select(IssueMapping)
        .where(
            IssueMapping.tenant_id == tenant_id,
            IssueMapping.source_issue_id == source_issue_id,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _bump(db: AsyncSession, tenant_id: str, source_issue_id: str, **values) -> None:
    await db.execute(
        update(IssueMapping)
        .where(
            IssueMapping.tenant_id == tenant_id,
            IssueMapping.source_issue_id == source_issue_id,
        )
        .values(event_count=IssueMapping.event_count + 1, **values)
        .execution_options(synchronize_session=False)
    )


async def record_ticket_sync(
    db: AsyncSession,
    tenant_id: str,
    source_issue_id: str,
    *,
    ticket_id: str,
    ticket_project_id: str,
    source_project: str | None = None,
    error_hash: str | None = None,
    source_status: str = "unresolved",
    ticket_status: str | None = None,
    event_id: str | None = None,
    release: str | None = None,
    now: datetime | None = None,
) -> IssueMapping:
    """Create the mapping after the first ticket, or update it on later syncs.

    The insert is conflict-tolerant so two workers racing on the first event
    of an issue end with one mapping and ``event_count == 2``.
    """
    now = now or utcnow()
    inserted = await insert_ignore_conflict(
        db,
        IssueMapping.__table__,
        {
            "tenant_id": tenant_id,
            "source_issue_id": source_issue_id,
            "source_project": source_project,
            "ticket_id": ticket_id,
            "ticket_project_id": ticket_project_id,
            "error_hash": error_hash,
            "source_status": source_status,
            "ticket_status": ticket_status,
            "latest_event_id": event_id,
            "first_seen": now,
            "last_seen": now,
            "event_count": 1,
            "first_release": release,
            "latest_release": release,
            "last_synced_at": now,
            "created_at": now,
            "updated_at": now,
        },
        index_elements=["tenant_id", "source_issue_id"],
    )
    if inserted:
        logger.info("Mapped issue %s to ticket %s (tenant %s)", source_issue_id, ticket_id, tenant_id)
    else:
        values = {
            "ticket_id": ticket_id,
            "source_status": source_status,
            "latest_event_id": event_id,
            "last_seen": now,
            "last_synced_at": now,
            "updated_at": now,
        }
        if ticket_status is not None:
            values["ticket_status"] = ticket_status
        if release:
            values["latest_release"] = release
        await _bump(db, tenant_id, source_issue_id, **values)
    return await get_mapping(db, tenant_id, source_issue_id)


async def touch_mapping(
    db: AsyncSession,
    tenant_id: str,
    source_issue_id: str,
    *,
    event_id: str | None = None,
    release: str | None = None,
    now: datetime | None = None,
) -> IssueMapping | None:
    """Count a repeat event without syncing the ticket."""
    now = now or utcnow()
    values = {"latest_event_id": event_id, "last_seen": now, "updated_at": now}
    if release:
        values["latest_release"] = release
    await _bump(db, tenant_id, source_issue_id, **values)
    return await get_mapping(db, tenant_id, source_issue_id)
