"""Slack Web API client used for operator alerts (Bot token, Block Kit)."""

from __future__ import annotations

import logging

import httpx

from issue_bridge.config import settings
from issue_bridge.templates.slack_templates import build_operator_alert

logger = logging.getLogger(__name__)

_SLACK_POST_MESSAGE = "https://slack.com/api/chat.postMessage"
_DEFAULT_TEXT = "Issue bridge notification"


def _message(channel: str, text: str, blocks: list[dict] | None = None) -> dict:
    message = {"channel": channel, "text": text or _DEFAULT_TEXT}
    if blocks:
        message["blocks"] = blocks
    return message


class SlackClient:
    """Post bridge alerts to a Slack channel.

    Every alert goes to ``BRIDGE_SLACK_CHANNEL`` unless a routing rule names
    its own channel.
    """

    def __init__(self) -> None:
        if not settings.slack_bot_token or not settings.slack_channel:
            raise RuntimeError("Slack not configured — set BRIDGE_SLACK_BOT_TOKEN and BRIDGE_SLACK_CHANNEL")
        self._headers = {
            "Authorization": f"Bearer {settings.slack_bot_token}",
            "Content-Type": "application/json; charset=utf-8",
        }
        self._default_channel = settings.slack_channel
        self._client = httpx.AsyncClient(timeout=10.0)

    async def _post(self, message: dict) -> dict:
        resp = await self._client.post(_SLACK_POST_MESSAGE, json=message, headers=self._headers)
        resp.raise_for_status()
        return resp.json()

    async def send_message(
        self,
        blocks: list[dict] | None = None,
        text: str = "",
        channel: str | None = None,
    ) -> dict:
        """Post to ``channel``; Block Kit rejections are resent as plain text."""
        channel = channel or self._default_channel
        data = await self._post(_message(channel, text, blocks))

        if not data.get("ok") and blocks and data.get("error") == "invalid_blocks":
            logger.warning("Slack rejected blocks for %s; resending as text", channel)
            data = await self._post(_message(channel, text))

        if not data.get("ok"):
            error = data.get("error", "unknown_error")
            logger.error("Slack API error posting to %s: %s", channel, error)
            raise RuntimeError(f"Slack API error: {error}")
        logger.info("Slack message sent to %s", channel)
        return data

    async def notify(
        self,
        tenant_id: str,
        severity: str,
        message: str,
        channel: str | None = None,
    ) -> dict:
        """Post an operator alert for a tenant."""
        return await self.send_message(
            build_operator_alert(tenant_id, severity, message),
            text=f"[{severity.upper()}] {tenant_id}: {message}",
            channel=channel,
        )

    async def close(self) -> None:
        await self._client.aclose()
