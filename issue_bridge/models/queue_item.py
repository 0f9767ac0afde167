"""Bridge queue work items.

Status flow: pending -> processing -> completed | pending (retry) | dead_lettered.
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text

from issue_bridge.database import Base


class BridgeQueueItem(Base):
    __tablename__ = "bridge_queue_items"
    __table_args__ = (
        Index("ix_bridge_queue_items_claimable", "status", "next_attempt_at"),
        Index("ix_bridge_queue_items_tenant_completed", "tenant_id", "status", "processed_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, nullable=False, index=True)
    webhook_event_id = Column(Integer, ForeignKey("webhook_events.id"), nullable=False)

    source_issue_id = Column(String, nullable=False)
    source_event_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    ticket_action = Column(String, default="create", nullable=False)

    target_project_id = Column(String, nullable=False)
    target_owner_id = Column(String, nullable=True)
    target_priority = Column(String, default="medium", nullable=False)
    routing_rule_id = Column(Integer, ForeignKey("routing_rules.id"), nullable=True)

    ticket_payload = Column(JSON, nullable=False)

    status = Column(String, default="pending", nullable=False)
    attempt_count = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    next_attempt_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    last_error = Column(Text, nullable=True)

    # Lease
    claimed_by = Column(String, nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    claim_token = Column(String, nullable=True, index=True)

    ticket_id = Column(String, nullable=True)
    created_ticket = Column(Boolean, default=False, nullable=False)

    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    processed_at = Column(DateTime(timezone=True), nullable=True)
