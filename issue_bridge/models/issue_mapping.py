"""Maps a source alert issue to the ticket created for it."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint

from issue_bridge.database import Base


class IssueMapping(Base):
    __tablename__ = "issue_mappings"
    __table_args__ = (UniqueConstraint("tenant_id", "source_issue_id", name="uq_issue_mappings_tenant_issue"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, nullable=False, index=True)
    source_issue_id = Column(String, nullable=False)
    source_project = Column(String, nullable=True)

    ticket_id = Column(String, nullable=False, index=True)
    ticket_project_id = Column(String, nullable=False)
    error_hash = Column(String, nullable=True, index=True)

    source_status = Column(String, default="unresolved", nullable=False)
    ticket_status = Column(String, nullable=True)

    latest_event_id = Column(String, nullable=True)
    first_seen = Column(DateTime(timezone=True), nullable=False)
    last_seen = Column(DateTime(timezone=True), nullable=False)
    event_count = Column(Integer, default=1, nullable=False)
    first_release = Column(String, nullable=True)
    latest_release = Column(String, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
