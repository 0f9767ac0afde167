"""Slack Block Kit message builders for operator alerts."""

from __future__ import annotations

_SEVERITY_EMOJI = {
    "critical": ":red_circle:",
    "warning": ":large_yellow_circle:",
    "info": ":large_blue_circle:",
}


def build_operator_alert(tenant_id: str, severity: str, message: str) -> list[dict]:
    """Build Block Kit blocks for a bridge operator alert."""
    emoji = _SEVERITY_EMOJI.get(severity, ":white_circle:")
    return [
        {
            "type": "header",
            "text": {
                "type": "plain_text",
                "text": "Issue Bridge Alert",
                "emoji": True,
            },
        },
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Tenant:*\n{tenant_id}"},
                {"type": "mrkdwn", "text": f"*Severity:*\n{emoji} {severity.upper()}"},
            ],
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": message},
        },
        {"type": "divider"},
    ]


def circuit_open_message(tenant_id: str, failures: int, cooldown_minutes: int) -> str:
    return (
        f"Circuit breaker opened for tenant `{tenant_id}` after {failures} consecutive "
        f"ticket failures. Ticket creation is paused for {cooldown_minutes} minutes."
    )


def ticket_created_message(source_issue_id: str, ticket_id: str, title: str, priority: str) -> str:
    return f"New *{priority}* ticket `{ticket_id}` for Sentry issue `{source_issue_id}`: {title}"


def dead_letter_message(source_issue_id: str, attempts: int, error: str) -> str:
    return (
        f"Sentry issue `{source_issue_id}` was moved to the dead-letter queue after "
        f"{attempts} attempt(s).\n*Last error:* {error[:300]}\n"
        ":point_right: *Replay or discard it from the operator console.*"
    )
