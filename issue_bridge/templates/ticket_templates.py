"""Ticket payload builders for Sentry issues (markdown descriptions)."""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timedelta, timezone

from issue_bridge.config import settings
from issue_bridge.privacy import filter_tags, redact_text
from issue_bridge.schemas.bridge import RoutingDecision
from issue_bridge.schemas.events import SentryEvent, SentryIssue, SentryWebhookPayload

MAX_DESCRIPTION_LENGTH = 2000
MAX_TITLE_LENGTH = 120

# Sentry issue status -> ticket status
TICKET_STATUS_MAP = {
    "unresolved": "todo",
    "resolved": "done",
    "ignored": "cancelled",
}

PRIORITY_ORDER = ["low", "medium", "high", "urgent"]


def error_hash(error_type: str, error_message: str, culprit: str) -> str:
    """Fingerprint used to spot similar errors across issues."""
    return hashlib.sha256(f"{error_type}:{error_message}:{culprit}".encode()).hexdigest()


def _stack_frames(event: SentryEvent | None, limit: int = 5) -> list[str]:
    entry = event.entry("exception") if event else None
    if entry is None or not isinstance(entry.data, dict):
        return []
    values = entry.data.get("values") or []
    if not values:
        return []
    frames = ((values[0] or {}).get("stacktrace") or {}).get("frames") or []
    in_app = [f for f in frames if f.get("in_app")]
    selected = (in_app or frames)[-limit:]
    lines = []
    for frame in reversed(selected):
        location = f"{frame['filename']}:{frame.get('lineno') or '?'}" if frame.get("filename") else "unknown"
        lines.append(f"  at {frame.get('function') or '<anonymous>'} ({location})")
    return lines


def _breadcrumbs(event: SentryEvent | None, limit: int = 5) -> list[str]:
    entry = event.entry("breadcrumbs") if event else None
    if entry is None or not isinstance(entry.data, dict):
        return []
    lines = []
    for crumb in (entry.data.get("values") or [])[-limit:]:
        ts = crumb.get("timestamp")
        when = (
            datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%H:%M:%S")
            if isinstance(ts, (int, float))
            else "??:??:??"
        )
        message = redact_text(crumb.get("message") or "(no message)")
        lines.append(f"  [{when}] {crumb.get('category') or 'default'}: {message}")
    return lines


def _code_block(heading: str, lines: list[str]) -> str:
    if not lines:
        return ""
    body = "\n".join(lines)
    return f"**{heading}:**\n```\n{body}\n```"


def build_description(
    issue: SentryIssue,
    event: SentryEvent | None,
    decision: RoutingDecision,
    tags: dict[str, str],
) -> str:
    environment = (event.environment if event else None) or "unknown"
    release = (event.release if event else None) or "unknown"
    trace_id = (event.trace_id if event else None) or "N/A"
    stack = _stack_frames(event)
    crumbs = _breadcrumbs(event)
    sentry_link = f"{settings.sentry_base_url.rstrip('/')}/issues/{issue.id}/"

    parts = [
        f"**Error:** `{redact_text(issue.error_type)}`",
        f"**Message:** {redact_text(issue.error_message)[:200]}",
        f"**Location:** `{redact_text(issue.culprit)[:100]}`",
        f"**Environment:** {environment} | **Release:** {release}",
        f"**First Seen:** {issue.first_seen} | **Count:** {issue.count or 1}",
        "",
        _code_block(f"Stack Trace (top {len(stack)})", stack),
        _code_block("Recent Breadcrumbs", crumbs),
        "**Tags:** " + ", ".join(f"`{k}={v}`" for k, v in sorted(tags.items())) if tags else "",
        "",
        "**Correlation IDs:**",
        f"- Sentry Issue: [{issue.short_id or issue.id}]({sentry_link})",
        f"- Trace ID: `{trace_id}`",
        f"- Tenant ID: `{tags.get('org_id', 'N/A')}`",
        f"- Deal ID: `{tags.get('deal_id', 'N/A')}`",
    ]
    if decision.runbook_urls:
        parts += ["", "**Attached Resources:**"] + [f"- {url}" for url in decision.runbook_urls]

    description = "\n".join(part for part in parts if part is not None)
    # Collapse runs of blank lines left by empty sections
    while "\n\n\n" in description:
        description = description.replace("\n\n\n", "\n\n")
    if len(description) > MAX_DESCRIPTION_LENGTH:
        description = description[: MAX_DESCRIPTION_LENGTH - 3] + "..."
    return description


def build_ticket_payload(
    payload: SentryWebhookPayload,
    decision: RoutingDecision,
    allowlisted_tags: list[str],
    now: datetime | None = None,
) -> dict:
    """Build the ticket-system payload for a routed Sentry issue."""
    issue = payload.data.issue
    event = payload.data.event
    now = now or datetime.now(timezone.utc)
    tags = filter_tags(((t.key, t.value) for t in event.tags), allowlisted_tags) if event else {}
    environment = (event.environment if event else None) or "unknown"
    release = (event.release if event else None) or "unknown"
    trace_id = (event.trace_id if event else None) or "N/A"
    label = issue.short_id or issue.id

    ai_context = json.dumps(
        {
            "sentry_issue_id": issue.id,
            "sentry_short_id": issue.short_id,
            "sentry_project": issue.project.slug,
            "trace_id": trace_id,
            "error_type": issue.error_type,
            "culprit": issue.culprit,
            "environment": environment,
            "release": release,
            "first_seen": issue.first_seen,
            "count": issue.count or 1,
        },
        sort_keys=True,
    )

    return {
        "title": f"[{label}] {redact_text(issue.title)[:MAX_TITLE_LENGTH]}",
        "description": build_description(issue, event, decision, tags),
        "project_id": decision.project_id,
        "assignee_id": decision.owner_id,
        "type": "bug",
        "status": "todo",
        "priority": decision.priority,
        "labels": ["sentry", *decision.labels],
        "due_date": (now + timedelta(days=settings.ticket_due_days)).isoformat(),
        "source_issue_id": issue.id,
        "source_project": issue.project.slug,
        "error_type": issue.error_type,
        "ai_context": ai_context,
        "ai_prompt": (
            f"Investigate Sentry error {label}: \"{issue.error_type}\" in {issue.culprit}. "
            f"Error occurred {issue.count or 1} times since {issue.first_seen}. "
            f"Check trace {trace_id} for distributed context."
        ),
    }


def build_regression_comment(release: str | None, count: int | None) -> str:
    return f"Issue regressed in release {release or 'unknown'}. Count: {count or 1}"


def escalate_priority(priority: str, floor: str = "high") -> str:
    if priority not in PRIORITY_ORDER:
        return floor
    return max(priority, floor, key=PRIORITY_ORDER.index)


def decision_for_action(decision: RoutingDecision, ticket_action: str) -> RoutingDecision:
    """Regressions are raised to at least ``high``; other actions keep the routed priority."""
    if ticket_action != "regression":
        return decision
    return decision.model_copy(update={"priority": escalate_priority(decision.priority)})


def build_action_ticket_payload(
    payload: SentryWebhookPayload,
    decision: RoutingDecision,
    ticket_action: str,
    allowlisted_tags: list[str],
    now: datetime | None = None,
) -> dict:
    """Ticket payload for a queued ``ticket_action`` (create/resolve/reopen/regression).

    ``decision`` should already have passed through ``decision_for_action``.
    """
    ticket = build_ticket_payload(payload, decision, allowlisted_tags, now=now)
    source_status = "resolved" if ticket_action == "resolve" else "unresolved"
    ticket["source_status"] = source_status
    ticket["status"] = TICKET_STATUS_MAP[source_status]
    if ticket_action == "regression":
        event = payload.data.event
        ticket["comment"] = build_regression_comment(
            event.release if event else None, payload.data.issue.count
        )
    return ticket
