"""Raw inbound alert events; the dedupe key makes ingestion idempotent."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text

from issue_bridge.database import Base


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (Index("ix_webhook_events_tenant_received", "tenant_id", "received_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, nullable=False, index=True)
    source_event_id = Column(String, nullable=False)
    source_issue_id = Column(String, nullable=True)
    event_type = Column(String, nullable=False)
    raw_payload = Column(JSON, nullable=False)
    status = Column(String, default="received", nullable=False)
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    dedupe_key = Column(String, unique=True, nullable=False, index=True)
    received_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
