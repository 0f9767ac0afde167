"""Ticket system REST client (Bearer token)."""

from __future__ import annotations

import logging

import httpx

from issue_bridge.config import settings
from issue_bridge.exceptions import PermanentTicketError, TicketCreationFailure

logger = logging.getLogger(__name__)

# 4xx responses worth retrying; every other 4xx means the request itself is bad.
_RETRYABLE_CLIENT_ERRORS = {408, 429}


class TicketClient:
    """Create and update tickets via the ticket system's REST API."""

    def __init__(self) -> None:
        if not settings.ticket_api_base_url or not settings.ticket_api_token:
            raise RuntimeError(
                "Ticket system not configured — set BRIDGE_TICKET_API_BASE_URL and BRIDGE_TICKET_API_TOKEN"
            )
        self._base_url = settings.ticket_api_base_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {settings.ticket_api_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        self._client = httpx.AsyncClient(timeout=15.0)

    async def _send(self, method: str, url: str, payload: dict) -> dict:
        try:
            resp = await self._client.request(method, url, json=payload, headers=self._headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            detail = exc.response.text[:500]
            if 400 <= status < 500 and status not in _RETRYABLE_CLIENT_ERRORS:
                raise PermanentTicketError(
                    f"ticket API rejected request ({status})",
                    {"status_code": status, "body": detail},
                ) from exc
            raise TicketCreationFailure(
                f"ticket API error ({status})",
                {"status_code": status, "body": detail},
            ) from exc
        except httpx.HTTPError as exc:
            raise TicketCreationFailure(f"ticket API unreachable: {exc}") from exc
        return resp.json() if resp.content else {}

    async def create_or_update_ticket(self, payload: dict, ticket_id: str | None = None) -> str:
        """Create a ticket, or patch ``ticket_id`` when given, and return its id."""
        if ticket_id:
            url = f"{self._base_url}/api/v1/tickets/{ticket_id}"
            data = await self._send("PATCH", url, payload)
            logger.info("Ticket updated: %s", ticket_id)
            return str(data.get("id") or ticket_id)

        url = f"{self._base_url}/api/v1/tickets"
        data = await self._send("POST", url, payload)
        new_id = data.get("id")
        if not new_id:
            raise TicketCreationFailure("ticket API response did not include an id", {"body": data})
        logger.info("Ticket created: %s", new_id)
        return str(new_id)

    async def close(self) -> None:
        await self._client.aclose()
