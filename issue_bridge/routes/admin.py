"""Admin routes: tenant bridge config and routing rules."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from issue_bridge.database import get_db
from issue_bridge.handlers.admin import create_routing_rule, list_routing_rules, upsert_bridge_config
from issue_bridge.schemas.bridge import BridgeConfigIn, BridgeConfigOut, RoutingRuleIn, RoutingRuleOut

router = APIRouter(prefix="/tenants/{tenant_id}", tags=["admin"])


@router.put("/config", response_model=BridgeConfigOut)
async def put_config(
    tenant_id: str,
    body: BridgeConfigIn,
    db: AsyncSession = Depends(get_db),
):
    """Create or replace the tenant's bridge config (one per tenant)."""
    config = await upsert_bridge_config(db, tenant_id, body)
    await db.commit()
    return config


@router.post("/rules", response_model=RoutingRuleOut, status_code=201)
async def post_rule(
    tenant_id: str,
    body: RoutingRuleIn,
    db: AsyncSession = Depends(get_db),
):
    rule = await create_routing_rule(db, tenant_id, body)
    await db.commit()
    return rule


@router.get("/rules", response_model=list[RoutingRuleOut])
async def get_rules(
    tenant_id: str,
    db: AsyncSession = Depends(get_db),
):
    return await list_routing_rules(db, tenant_id)
