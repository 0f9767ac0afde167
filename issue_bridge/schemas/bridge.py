"""Pydantic models for routing decisions, admin requests and operator views."""

import re
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Priority = Literal["low", "medium", "high", "urgent"]


class EventAttributes(BaseModel):
    """Normalized, privacy-filtered view of an alert used for rule matching."""

    model_config = ConfigDict(frozen=True)

    source_project: str = ""
    error_type: str = ""
    error_message: str = ""
    culprit: str = ""
    environment: Optional[str] = None
    release: Optional[str] = None
    tags: dict[str, str] = Field(default_factory=dict)


class RoutingDecision(BaseModel):
    project_id: str
    owner_id: Optional[str] = None
    priority: str = "medium"
    matched_rule_id: Optional[int] = None
    matched_rule_name: Optional[str] = None
    confidence: float = 1.0
    runbook_urls: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)
    slack_channel: Optional[str] = None
    test_matches: list[int] = Field(default_factory=list)


class AdmissionResult(BaseModel):
    allowed: bool
    reason: Optional[Literal["circuit-open", "hourly-limit", "daily-limit", "bridge-disabled"]] = None
    hourly_count: int = 0
    daily_count: int = 0
    retry_at: Optional[datetime] = None


class BridgeConfigIn(BaseModel):
    """Admin payload for creating or replacing a tenant's bridge config."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    sentry_org_slug: Optional[str] = None
    ticket_credentials_ref: Optional[str] = None
    default_project_id: Optional[str] = None
    default_owner_id: Optional[str] = None
    default_priority: Priority = "medium"
    triage_mode_enabled: bool = True
    triage_confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    max_tickets_per_hour: int = Field(default=50, ge=1)
    max_tickets_per_day: int = Field(default=200, ge=1)
    cooldown_same_issue_minutes: int = Field(default=5, ge=0)
    spike_threshold_count: int = Field(default=10, ge=1)
    spike_threshold_minutes: int = Field(default=5, ge=1)
    circuit_breaker_failure_threshold: int = Field(default=5, ge=1)
    circuit_breaker_cooldown_minutes: int = Field(default=15, ge=1)
    allowlisted_tags: Optional[list[str]] = None

    @model_validator(mode="after")
    def _enabled_needs_destination(self) -> "BridgeConfigIn":
        if self.enabled and not (self.default_project_id or "").strip():
            raise ValueError("an enabled bridge requires default_project_id")
        if self.max_tickets_per_day < self.max_tickets_per_hour:
            raise ValueError("max_tickets_per_day must be >= max_tickets_per_hour")
        return self


_REGEX_FIELDS = (
    "match_source_project",
    "match_error_type",
    "match_error_message",
    "match_culprit",
    "match_release_pattern",
)


class RoutingRuleIn(BaseModel):
    """Admin payload for a routing rule; malformed rules never reach the pipeline."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    description: Optional[str] = None
    priority: int = 100
    enabled: bool = True
    test_mode: bool = False
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)

    match_source_project: Optional[str] = None
    match_error_type: Optional[str] = None
    match_error_message: Optional[str] = None
    match_culprit: Optional[str] = None
    match_tags: Optional[dict[str, str]] = None
    match_environment: Optional[str] = None
    match_release_pattern: Optional[str] = None

    target_project_id: str = Field(min_length=1)
    target_owner_id: Optional[str] = None
    target_priority: Priority = "medium"

    runbook_urls: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)
    notify_slack_channel: Optional[str] = None

    @field_validator(*_REGEX_FIELDS)
    @classmethod
    def _compile_pattern(cls, value: Optional[str]) -> Optional[str]:
        if value in (None, ""):
            return None
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid pattern {value!r}: {exc}") from exc
        return value

    @field_validator("target_project_id")
    @classmethod
    def _strip_target(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("target_project_id must not be blank")
        return value


class BridgeConfigOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str
    enabled: bool
    sentry_org_slug: Optional[str] = None
    ticket_credentials_ref: Optional[str] = None
    default_project_id: Optional[str] = None
    default_owner_id: Optional[str] = None
    default_priority: str
    triage_mode_enabled: bool
    triage_confidence_threshold: float
    max_tickets_per_hour: int
    max_tickets_per_day: int
    cooldown_same_issue_minutes: int
    spike_threshold_count: int
    spike_threshold_minutes: int
    circuit_breaker_failure_threshold: int
    circuit_breaker_cooldown_minutes: int
    circuit_breaker_tripped_at: Optional[datetime] = None
    consecutive_failures: int
    allowlisted_tags: list[str]
    updated_at: datetime


class RoutingRuleOut(RoutingRuleIn):
    model_config = ConfigDict(from_attributes=True)

    id: int
    runbook_urls: Optional[list[str]] = None
    labels: Optional[list[str]] = None
    created_at: datetime


class TriageResolveRequest(BaseModel):
    decision: Literal["approve", "reject"]
    resolver: str = Field(min_length=1)
    project_id: Optional[str] = None
    owner_id: Optional[str] = None
    priority: Optional[Priority] = None
    rejection_reason: Optional[str] = None


class TriageItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    webhook_event_id: int
    source_issue_id: str
    source_project: str
    error_title: str
    error_type: Optional[str] = None
    culprit: Optional[str] = None
    environment: Optional[str] = None
    event_count: int
    suggested_project_id: Optional[str] = None
    suggested_owner_id: Optional[str] = None
    suggested_priority: Optional[str] = None
    matched_rule_id: Optional[int] = None
    confidence: Optional[float] = None
    triage_reason: Optional[str] = None
    status: str
    triaged_by: Optional[str] = None
    triaged_at: Optional[datetime] = None
    queue_item_id: Optional[int] = None
    created_at: datetime


class DeadLetterResolveRequest(BaseModel):
    resolver: str = Field(min_length=1)
    notes: Optional[str] = None
    reroute: bool = False


class DeadLetterOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    original_queue_id: int
    webhook_event_id: int
    source_issue_id: str
    event_type: str
    failure_reason: str
    attempt_count: int
    status: str
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    replayed_queue_item_id: Optional[int] = None
    created_at: datetime


class MetricsBucketOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    bucket_start: datetime
    bucket_end: datetime
    webhooks_received: int
    webhooks_processed: int
    webhooks_failed: int
    webhooks_skipped: int
    tickets_created: int
    tickets_updated: int
    tickets_triaged: int
    dead_lettered: int
    avg_processing_time_ms: float
    max_processing_time_ms: float
