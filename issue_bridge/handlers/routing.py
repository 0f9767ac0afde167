"""Routing engine: maps an alert's attributes to a ticket destination.

``route`` is a pure function of (attributes, rules, config) so that replaying
an event against an unchanged rule set always reproduces the same decision.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from issue_bridge.database import as_utc
from issue_bridge.models.bridge_config import BridgeConfig
from issue_bridge.models.routing_rule import RoutingRule
from issue_bridge.privacy import filter_tags, redact_text
from issue_bridge.schemas.bridge import EventAttributes, RoutingDecision
from issue_bridge.schemas.events import SentryWebhookPayload

logger = logging.getLogger(__name__)

# Confidence reported when no rule matched and the tenant default was used.
DEFAULT_ROUTE_CONFIDENCE = 0.0

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def normalize_event(payload: SentryWebhookPayload, allowlisted_tags: Iterable[str]) -> EventAttributes:
    """Extract the attributes rules can match on; tags outside the allow-list are dropped."""
    issue = payload.data.issue
    event = payload.data.event
    tags = filter_tags(((t.key, t.value) for t in event.tags), allowlisted_tags) if event else {}
    return EventAttributes(
        source_project=issue.project.slug or issue.project.name,
        error_type=issue.error_type,
        error_message=redact_text(issue.error_message),
        culprit=issue.culprit,
        environment=event.environment if event else None,
        release=event.release if event else None,
        tags=tags,
    )


def _search(pattern: str, value: str | None) -> bool:
    return value is not None and re.search(pattern, value, re.IGNORECASE) is not None


def _created_at(rule: RoutingRule) -> datetime:
    return as_utc(rule.created_at) or _EPOCH


def rule_matches(rule: RoutingRule, attrs: EventAttributes) -> bool:
    """True when every predicate present on ``rule`` matches ``attrs``."""
    if rule.match_source_project and not (
        attrs.source_project
        and re.fullmatch(rule.match_source_project, attrs.source_project, re.IGNORECASE)
    ):
        return False
    if rule.match_error_type and not _search(rule.match_error_type, attrs.error_type):
        return False
    if rule.match_error_message and not _search(rule.match_error_message, attrs.error_message):
        return False
    if rule.match_culprit and not _search(rule.match_culprit, attrs.culprit):
        return False
    if rule.match_environment and attrs.environment != rule.match_environment:
        return False
    if rule.match_release_pattern and not _search(rule.match_release_pattern, attrs.release):
        return False
    if rule.match_tags:
        for key, expected in rule.match_tags.items():
            if attrs.tags.get(key) != str(expected):
                return False
    return True


def ordered_rules(rules: Iterable[RoutingRule]) -> list[RoutingRule]:
    return sorted(
        (r for r in rules if r.enabled),
        key=lambda r: (r.priority, _created_at(r), r.id or 0),
    )


def _decision_from_rule(rule: RoutingRule, config: BridgeConfig) -> RoutingDecision:
    return RoutingDecision(
        project_id=rule.target_project_id,
        owner_id=rule.target_owner_id or config.default_owner_id,
        priority=rule.target_priority or config.default_priority,
        matched_rule_id=rule.id,
        matched_rule_name=rule.name,
        confidence=rule.confidence if rule.confidence is not None else 1.0,
        runbook_urls=list(rule.runbook_urls or []),
        labels=list(rule.labels or []),
        slack_channel=rule.notify_slack_channel,
    )


def route(
    attrs: EventAttributes,
    rules: Iterable[RoutingRule],
    config: BridgeConfig,
) -> RoutingDecision | None:
    """Pick a destination for ``attrs``.

    The first matching non-test rule wins. Test-mode rules that match are
    logged and listed in ``test_matches`` but never route. Without a match the
    tenant default is returned at zero confidence, or None when the tenant has
    no default project.
    """
    test_matches: list[int] = []
    for rule in ordered_rules(rules):
        if not rule_matches(rule, attrs):
            continue
        if rule.test_mode:
            logger.info(
                "Test-mode rule %s (%s) matched %s/%s for tenant %s",
                rule.id, rule.name, attrs.source_project, attrs.error_type, config.tenant_id,
            )
            test_matches.append(rule.id)
            continue
        decision = _decision_from_rule(rule, config)
        decision.test_matches = test_matches
        return decision

    if not config.default_project_id:
        logger.warning("No routing rule matched and tenant %s has no default project", config.tenant_id)
        return None
    return RoutingDecision(
        project_id=config.default_project_id,
        owner_id=config.default_owner_id,
        priority=config.default_priority or "medium",
        confidence=DEFAULT_ROUTE_CONFIDENCE,
        test_matches=test_matches,
    )


async def load_rules(db: AsyncSession, tenant_id: str) -> list[RoutingRule]:
    result = await db.execute(
        select(RoutingRule)
        .where(RoutingRule.tenant_id == tenant_id, RoutingRule.enabled.is_(True))
        .order_by(RoutingRule.priority, RoutingRule.created_at, RoutingRule.id)
    )
    return list(result.scalars().all())


async def route_event(
    db: AsyncSession,
    config: BridgeConfig,
    attrs: EventAttributes,
) -> RoutingDecision | None:
    rules = await load_rules(db, config.tenant_id)
    return route(attrs, rules, config)
