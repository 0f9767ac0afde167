"""Per-tenant admission gate: ticket quotas and the failure circuit breaker.

The config row is locked for the duration of the check so two workers cannot
both see room under a quota and jointly exceed it. SQLite has no row locks;
there the database-level write lock serializes writers instead.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from issue_bridge.database import as_utc, utcnow
from issue_bridge.exceptions import AdmissionDenied
from issue_bridge.models.bridge_config import BridgeConfig
from issue_bridge.models.queue_item import BridgeQueueItem
from issue_bridge.schemas.bridge import AdmissionResult

logger = logging.getLogger(__name__)


def breaker_reopens_at(config: BridgeConfig) -> datetime | None:
    tripped_at = as_utc(config.circuit_breaker_tripped_at)
    if tripped_at is None:
        return None
    return tripped_at + timedelta(minutes=config.circuit_breaker_cooldown_minutes)


def breaker_open(config: BridgeConfig, now: datetime) -> bool:
    reopens_at = breaker_reopens_at(config)
    return reopens_at is not None and now < reopens_at


async def _lock_config(db: AsyncSession, config_id: int) -> BridgeConfig:
    result = await db.execute(
        select(BridgeConfig)
        .where(BridgeConfig.id == config_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _tickets_created_since(db: AsyncSession, tenant_id: str, since: datetime) -> int:
    result = await db.execute(
        select(func.count(BridgeQueueItem.id)).where(
            BridgeQueueItem.tenant_id == tenant_id,
            BridgeQueueItem.status == "completed",
            BridgeQueueItem.created_ticket.is_(True),
            BridgeQueueItem.processed_at >= since,
        )
    )
    return result.scalar_one()


async def check_admission(
    db: AsyncSession,
    config: BridgeConfig,
    now: datetime | None = None,
) -> AdmissionResult:
    """Decide whether ``config``'s tenant may create another ticket right now.

    1. Breaker tripped and still cooling down -> ``circuit-open``.
    2. Completed ticket creations in the trailing hour at the hourly max ->
       ``hourly-limit``; since UTC midnight at the daily max -> ``daily-limit``.
    3. Otherwise allowed.
    """
    now = now or utcnow()
    config = await _lock_config(db, config.id)

    if not config.enabled:
        return AdmissionResult(allowed=False, reason="bridge-disabled")

    if breaker_open(config, now):
        retry_at = breaker_reopens_at(config)
        logger.info("Admission denied for tenant %s: circuit open until %s", config.tenant_id, retry_at)
        return AdmissionResult(allowed=False, reason="circuit-open", retry_at=retry_at)

    hour_start = now - timedelta(hours=1)
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    hourly = await _tickets_created_since(db, config.tenant_id, hour_start)
    daily = await _tickets_created_since(db, config.tenant_id, day_start)

    if hourly >= config.max_tickets_per_hour:
        logger.info(
            "Admission denied for tenant %s: %d tickets in the last hour (max %d)",
            config.tenant_id, hourly, config.max_tickets_per_hour,
        )
        return AdmissionResult(
            allowed=False,
            reason="hourly-limit",
            hourly_count=hourly,
            daily_count=daily,
            retry_at=await _oldest_in_window_expiry(db, config.tenant_id, hour_start),
        )
    if daily >= config.max_tickets_per_day:
        logger.info(
            "Admission denied for tenant %s: %d tickets today (max %d)",
            config.tenant_id, daily, config.max_tickets_per_day,
        )
        return AdmissionResult(
            allowed=False,
            reason="daily-limit",
            hourly_count=hourly,
            daily_count=daily,
            retry_at=day_start + timedelta(days=1),
        )
    return AdmissionResult(allowed=True, hourly_count=hourly, daily_count=daily)


async def _oldest_in_window_expiry(db: AsyncSession, tenant_id: str, since: datetime) -> datetime | None:
    """When the oldest ticket in the trailing hour leaves the window."""
    result = await db.execute(
        select(func.min(BridgeQueueItem.processed_at)).where(
            BridgeQueueItem.tenant_id == tenant_id,
            BridgeQueueItem.status == "completed",
            BridgeQueueItem.created_ticket.is_(True),
            BridgeQueueItem.processed_at >= since,
        )
    )
    oldest = as_utc(result.scalar_one_or_none())
    return oldest + timedelta(hours=1) if oldest else None


async def record_success(db: AsyncSession, config: BridgeConfig) -> None:
    """Reset the failure run and close the breaker."""
    await db.execute(
        update(BridgeConfig)
        .where(BridgeConfig.id == config.id)
        .values(consecutive_failures=0, circuit_breaker_tripped_at=None)
        .execution_options(synchronize_session=False)
    )
    await _lock_config(db, config.id)


async def record_failure(
    db: AsyncSession,
    config: BridgeConfig,
    now: datetime | None = None,
) -> bool:
    """Count a ticket failure; returns True when this failure tripped the breaker.

    A failure after the cooldown has elapsed (the half-open attempt) trips the
    breaker again because the run of failures was never reset by a success.
    """
    now = now or utcnow()
    await db.execute(
        update(BridgeConfig)
        .where(BridgeConfig.id == config.id)
        .values(consecutive_failures=BridgeConfig.consecutive_failures + 1)
        .execution_options(synchronize_session=False)
    )
    config = await _lock_config(db, config.id)
    if config.consecutive_failures < config.circuit_breaker_failure_threshold:
        return False
    if breaker_open(config, now):
        return False
    config.circuit_breaker_tripped_at = now
    await db.flush()
    logger.warning(
        "Circuit breaker tripped for tenant %s after %d consecutive failures",
        config.tenant_id, config.consecutive_failures,
    )
    return True


async def require_admission(
    db: AsyncSession,
    config: BridgeConfig,
    now: datetime | None = None,
) -> AdmissionResult:
    """Like ``check_admission`` but raises ``AdmissionDenied`` on denial."""
    result = await check_admission(db, config, now)
    if not result.allowed:
        raise AdmissionDenied(result.reason, retry_at=result.retry_at)
    return result
