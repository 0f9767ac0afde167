"""Events held for a human decision before any ticket is created."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text

from issue_bridge.database import Base


class TriageItem(Base):
    __tablename__ = "triage_items"
    __table_args__ = (Index("ix_triage_items_tenant_status", "tenant_id", "status"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, nullable=False, index=True)
    webhook_event_id = Column(Integer, ForeignKey("webhook_events.id"), nullable=False)

    source_issue_id = Column(String, nullable=False)
    source_project = Column(String, nullable=False)
    error_title = Column(String, nullable=False)
    error_type = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    culprit = Column(String, nullable=True)
    environment = Column(String, nullable=True)
    release_version = Column(String, nullable=True)
    event_count = Column(Integer, default=1, nullable=False)
    first_seen = Column(String, nullable=True)

    suggested_project_id = Column(String, nullable=True)
    suggested_owner_id = Column(String, nullable=True)
    suggested_priority = Column(String, nullable=True)
    matched_rule_id = Column(Integer, ForeignKey("routing_rules.id"), nullable=True)
    confidence = Column(Float, nullable=True)
    triage_reason = Column(String, nullable=True)

    ticket_payload = Column(JSON, nullable=False)

    status = Column(String, default="pending", nullable=False)
    triaged_by = Column(String, nullable=True)
    triaged_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    queue_item_id = Column(Integer, ForeignKey("bridge_queue_items.id"), nullable=True)

    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
