"""Operator routes for throughput metrics and admission state."""

from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from issue_bridge.database import as_utc, get_db, utcnow
from issue_bridge.handlers.admin import get_bridge_config
from issue_bridge.handlers.admission import check_admission
from issue_bridge.handlers.metrics import get_buckets
from issue_bridge.schemas.bridge import AdmissionResult, MetricsBucketOut

router = APIRouter(prefix="/tenants/{tenant_id}", tags=["metrics"])


@router.get("/metrics", response_model=list[MetricsBucketOut])
async def get_metrics(
    tenant_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: AsyncSession = Depends(get_db),
):
    """Hourly buckets in ``[start, end)``; defaults to the last 24 hours."""
    end = as_utc(end) or utcnow()
    start = as_utc(start) or end - timedelta(hours=24)
    return await get_buckets(db, tenant_id, start, end)


@router.get("/admission", response_model=AdmissionResult)
async def get_admission(
    tenant_id: str,
    db: AsyncSession = Depends(get_db),
):
    config = await get_bridge_config(db, tenant_id)
    result = await check_admission(db, config)
    await db.commit()
    return result
