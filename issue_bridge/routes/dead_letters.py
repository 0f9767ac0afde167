"""Operator routes for the dead-letter store."""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from issue_bridge.database import get_db
from issue_bridge.handlers.dead_letter import discard, list_dead_letters, replay
from issue_bridge.schemas.bridge import DeadLetterOut, DeadLetterResolveRequest

router = APIRouter(prefix="/tenants/{tenant_id}/dead-letters", tags=["dead-letters"])


@router.get("", response_model=list[DeadLetterOut])
async def get_dead_letters(
    tenant_id: str,
    status: Optional[str] = "pending",
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
):
    return await list_dead_letters(db, tenant_id, status=status, limit=limit)


@router.post("/{dead_letter_id}/replay", response_model=DeadLetterOut)
async def replay_dead_letter(
    tenant_id: str,
    dead_letter_id: int,
    body: DeadLetterResolveRequest,
    db: AsyncSession = Depends(get_db),
):
    """Re-inject the item as a fresh queue item; ``reroute`` re-evaluates routing first."""
    record, _ = await replay(
        db,
        tenant_id,
        dead_letter_id,
        resolver=body.resolver,
        notes=body.notes,
        reroute=body.reroute,
    )
    await db.commit()
    return record


@router.post("/{dead_letter_id}/discard", response_model=DeadLetterOut)
async def discard_dead_letter(
    tenant_id: str,
    dead_letter_id: int,
    body: DeadLetterResolveRequest,
    db: AsyncSession = Depends(get_db),
):
    record = await discard(db, tenant_id, dead_letter_id, resolver=body.resolver, notes=body.notes)
    await db.commit()
    return record
