"""Per-tenant bridge configuration: routing defaults, quotas and breaker state."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, String

from issue_bridge.config import DEFAULT_ALLOWLISTED_TAGS
from issue_bridge.database import Base


class BridgeConfig(Base):
    __tablename__ = "bridge_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, unique=True, nullable=False, index=True)
    enabled = Column(Boolean, default=False, nullable=False)

    sentry_org_slug = Column(String, nullable=True)
    ticket_credentials_ref = Column(String, nullable=True)

    default_project_id = Column(String, nullable=True)
    default_owner_id = Column(String, nullable=True)
    default_priority = Column(String, default="medium", nullable=False)

    triage_mode_enabled = Column(Boolean, default=True, nullable=False)
    triage_confidence_threshold = Column(Float, default=0.5, nullable=False)

    max_tickets_per_hour = Column(Integer, default=50, nullable=False)
    max_tickets_per_day = Column(Integer, default=200, nullable=False)
    cooldown_same_issue_minutes = Column(Integer, default=5, nullable=False)

    spike_threshold_count = Column(Integer, default=10, nullable=False)
    spike_threshold_minutes = Column(Integer, default=5, nullable=False)

    circuit_breaker_failure_threshold = Column(Integer, default=5, nullable=False)
    circuit_breaker_cooldown_minutes = Column(Integer, default=15, nullable=False)
    circuit_breaker_tripped_at = Column(DateTime(timezone=True), nullable=True)
    consecutive_failures = Column(Integer, default=0, nullable=False)

    allowlisted_tags = Column(JSON, default=lambda: list(DEFAULT_ALLOWLISTED_TAGS), nullable=False)

    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
