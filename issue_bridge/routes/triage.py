"""Operator routes for the triage queue."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from issue_bridge.database import get_db
from issue_bridge.handlers.triage import approve_all_pending, list_triage_items, resolve_triage_item
from issue_bridge.schemas.bridge import TriageItemOut, TriageResolveRequest

router = APIRouter(prefix="/tenants/{tenant_id}/triage", tags=["triage"])


class ApproveAllRequest(BaseModel):
    resolver: str


class ApproveAllResponse(BaseModel):
    approved: int
    queue_item_ids: list[int]


@router.get("", response_model=list[TriageItemOut])
async def get_triage_items(
    tenant_id: str,
    status: Optional[str] = "pending",
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
):
    return await list_triage_items(db, tenant_id, status=status, limit=limit)


@router.post("/{item_id}/resolve", response_model=TriageItemOut)
async def resolve_item(
    tenant_id: str,
    item_id: int,
    body: TriageResolveRequest,
    db: AsyncSession = Depends(get_db),
):
    """Approve (optionally with an edited destination) or reject a triage item."""
    item, _ = await resolve_triage_item(
        db,
        tenant_id,
        item_id,
        approve=body.decision == "approve",
        resolver=body.resolver,
        project_id=body.project_id,
        owner_id=body.owner_id,
        priority=body.priority,
        rejection_reason=body.rejection_reason,
    )
    await db.commit()
    return item


@router.post("/approve-all", response_model=ApproveAllResponse)
async def approve_all(
    tenant_id: str,
    body: ApproveAllRequest,
    db: AsyncSession = Depends(get_db),
):
    queued = await approve_all_pending(db, tenant_id, body.resolver)
    await db.commit()
    return ApproveAllResponse(approved=len(queued), queue_item_ids=[item.id for item in queued])
