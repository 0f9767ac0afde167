"""Tenant routing rules, evaluated in (priority, created_at) order."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Index, Integer, String, Text

from issue_bridge.database import Base


class RoutingRule(Base):
    __tablename__ = "routing_rules"
    __table_args__ = (Index("ix_routing_rules_tenant_priority", "tenant_id", "priority"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, nullable=False, index=True)

    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(Integer, default=100, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    test_mode = Column(Boolean, default=False, nullable=False)
    confidence = Column(Float, default=1.0, nullable=False)

    # Predicates; NULL means "match anything"
    match_source_project = Column(String, nullable=True)
    match_error_type = Column(String, nullable=True)
    match_error_message = Column(String, nullable=True)
    match_culprit = Column(String, nullable=True)
    match_tags = Column(JSON, nullable=True)
    match_environment = Column(String, nullable=True)
    match_release_pattern = Column(String, nullable=True)

    target_project_id = Column(String, nullable=False)
    target_owner_id = Column(String, nullable=True)
    target_priority = Column(String, default="medium", nullable=False)

    runbook_urls = Column(JSON, nullable=True)
    labels = Column(JSON, nullable=True)
    notify_slack_channel = Column(String, nullable=True)

    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
