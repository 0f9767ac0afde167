"""Tenant configuration: the bridge config row and routing rules."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from issue_bridge.config import settings
from issue_bridge.database import insert_ignore_conflict, utcnow
from issue_bridge.exceptions import ConfigurationError, ResourceNotFound
from issue_bridge.models.bridge_config import BridgeConfig
from issue_bridge.models.routing_rule import RoutingRule
from issue_bridge.schemas.bridge import BridgeConfigIn, RoutingRuleIn

logger = logging.getLogger(__name__)


async def find_bridge_config(db: AsyncSession, tenant_id: str) -> BridgeConfig | None:
    result = await db.execute(select(BridgeConfig).where(BridgeConfig.tenant_id == tenant_id))
    return result.scalar_one_or_none()


async def get_bridge_config(db: AsyncSession, tenant_id: str) -> BridgeConfig:
    config = await find_bridge_config(db, tenant_id)
    if config is None:
        raise ResourceNotFound("BridgeConfig", tenant_id)
    return config


async def upsert_bridge_config(db: AsyncSession, tenant_id: str, data: BridgeConfigIn) -> BridgeConfig:
    """Create or replace the tenant's single bridge config.

    Breaker state and the failure counter are runtime state and survive an
    update.
    """
    values = data.model_dump()
    if values["allowlisted_tags"] is None:
        values["allowlisted_tags"] = list(settings.default_allowlisted_tags)

    created = await insert_ignore_conflict(
        db,
        BridgeConfig.__table__,
        {"tenant_id": tenant_id, **values},
        index_elements=["tenant_id"],
    )
    config = await get_bridge_config(db, tenant_id)
    if not created:
        for key, value in values.items():
            setattr(config, key, value)
        config.updated_at = utcnow()
    await db.flush()
    await db.refresh(config)
    logger.info("Bridge config %s for tenant %s (enabled=%s)", "created" if created else "updated", tenant_id, config.enabled)
    return config


async def create_routing_rule(db: AsyncSession, tenant_id: str, data: RoutingRuleIn) -> RoutingRule:
    """Save a rule; tag predicates must use allow-listed keys or they could never match."""
    config = await get_bridge_config(db, tenant_id)
    allowlist = set(config.allowlisted_tags or settings.default_allowlisted_tags)
    unknown = sorted(set(data.match_tags or {}) - allowlist)
    if unknown:
        raise ConfigurationError(
            f"match_tags uses keys that are not allow-listed: {', '.join(unknown)}",
            {"keys": unknown},
        )
    rule = RoutingRule(tenant_id=tenant_id, **data.model_dump(), created_at=utcnow())
    db.add(rule)
    await db.flush()
    logger.info("Routing rule %d (%s) created for tenant %s", rule.id, rule.name, tenant_id)
    return rule


async def list_routing_rules(db: AsyncSession, tenant_id: str) -> list[RoutingRule]:
    result = await db.execute(
        select(RoutingRule)
        .where(RoutingRule.tenant_id == tenant_id)
        .order_by(RoutingRule.priority, RoutingRule.created_at, RoutingRule.id)
    )
    return list(result.scalars().all())
