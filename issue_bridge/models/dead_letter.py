"""Queue items that exhausted their attempts, awaiting operator action."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text

from issue_bridge.database import Base


class DeadLetterItem(Base):
    __tablename__ = "dead_letter_items"
    __table_args__ = (Index("ix_dead_letter_items_tenant_status", "tenant_id", "status"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, nullable=False, index=True)
    original_queue_id = Column(Integer, nullable=False)
    queue_type = Column(String, default="bridge", nullable=False)
    webhook_event_id = Column(Integer, ForeignKey("webhook_events.id"), nullable=False)

    source_issue_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    original_payload = Column(JSON, nullable=False)

    failure_reason = Column(Text, nullable=False)
    attempt_count = Column(Integer, nullable=False)
    last_error_details = Column(JSON, nullable=True)

    status = Column(String, default="pending", nullable=False)
    resolved_by = Column(String, nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    replayed_queue_item_id = Column(Integer, nullable=True)

    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
