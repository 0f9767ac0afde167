"""Pydantic models for Sentry issue webhook payloads."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class SentryProject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    name: str = ""
    slug: str = ""


class SentryIssueMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Optional[str] = None
    value: Optional[str] = None
    filename: Optional[str] = None
    function: Optional[str] = None


class SentryIssue(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    short_id: str = Field(default="", alias="shortId")
    title: str = ""
    culprit: str = ""
    level: str = "error"
    status: str = "unresolved"
    platform: str = ""
    project: SentryProject = Field(default_factory=SentryProject)
    type: str = ""
    metadata: SentryIssueMetadata = Field(default_factory=SentryIssueMetadata)
    first_seen: str = Field(default="", alias="firstSeen")
    last_seen: str = Field(default="", alias="lastSeen")
    count: Optional[int] = None

    @property
    def error_type(self) -> str:
        return self.metadata.type or self.type or "Error"

    @property
    def error_message(self) -> str:
        return self.metadata.value or self.title


class SentryTag(BaseModel):
    key: str
    value: str


class SentryEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    data: Any = None


class SentryEvent(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    event_id: str = Field(default="", alias="eventID")
    contexts: dict[str, Any] = Field(default_factory=dict)
    entries: list[SentryEntry] = Field(default_factory=list)
    environment: Optional[str] = None
    message: Optional[str] = None
    platform: str = ""
    release: Optional[str] = None
    tags: list[SentryTag] = Field(default_factory=list)
    fingerprint: list[str] = Field(default_factory=list)

    def entry(self, entry_type: str) -> SentryEntry | None:
        return next((e for e in self.entries if e.type == entry_type), None)

    @property
    def trace_id(self) -> str | None:
        trace = self.contexts.get("trace") or {}
        return trace.get("trace_id") if isinstance(trace, dict) else None


class SentryWebhookData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    issue: SentryIssue
    event: Optional[SentryEvent] = None


class SentryWebhookPayload(BaseModel):
    """Sentry ``issue`` resource webhook body."""

    model_config = ConfigDict(extra="ignore")

    action: str
    data: SentryWebhookData
    installation: Optional[dict[str, Any]] = None
    actor: Optional[dict[str, Any]] = None

    @property
    def source_event_id(self) -> str:
        """Sentry event id, or a per-delivery key for event-less issue webhooks.

        Lifecycle webhooks (``resolved``, ``unresolved`` ...) usually carry no
        event, so the fallback includes the action and the issue's last-seen
        time (or status): a redelivery repeats the key, a new transition does not.
        """
        event = self.data.event
        if event is not None and event.event_id:
            return event.event_id
        issue = self.data.issue
        return f"issue-{issue.id}:{self.action}:{issue.last_seen or issue.status}"


class WebhookResponse(BaseModel):
    status: str
    event_id: Optional[int] = None
    queue_item_id: Optional[int] = None
    triage_item_id: Optional[int] = None
    project_id: Optional[str] = None
    priority: Optional[str] = None
    matched_rule_id: Optional[int] = None
    reason: Optional[str] = None
