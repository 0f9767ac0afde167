"""Hourly per-tenant throughput and latency rollups."""

from sqlalchemy import Column, DateTime, Float, Integer, String, UniqueConstraint

from issue_bridge.database import Base


class MetricsBucket(Base):
    __tablename__ = "metrics_buckets"
    __table_args__ = (UniqueConstraint("tenant_id", "bucket_start", name="uq_metrics_buckets_tenant_bucket"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, nullable=False, index=True)
    bucket_start = Column(DateTime(timezone=True), nullable=False)
    bucket_end = Column(DateTime(timezone=True), nullable=False)

    webhooks_received = Column(Integer, default=0, nullable=False)
    webhooks_processed = Column(Integer, default=0, nullable=False)
    webhooks_failed = Column(Integer, default=0, nullable=False)
    webhooks_skipped = Column(Integer, default=0, nullable=False)

    tickets_created = Column(Integer, default=0, nullable=False)
    tickets_updated = Column(Integer, default=0, nullable=False)
    tickets_triaged = Column(Integer, default=0, nullable=False)
    dead_lettered = Column(Integer, default=0, nullable=False)

    latency_samples = Column(Integer, default=0, nullable=False)
    avg_processing_time_ms = Column(Float, default=0.0, nullable=False)
    max_processing_time_ms = Column(Float, default=0.0, nullable=False)
