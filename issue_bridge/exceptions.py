"""Error taxonomy for the issue bridge.

Duplicate events and unmatched rules are ordinary outcomes and never raised;
neither is retry exhaustion, which leaves a dead-letter record behind.
Everything here is either surfaced to an operator or consumed by the queue's
retry policy.
"""

from __future__ import annotations

from datetime import datetime


class BridgeError(Exception):
    """Base exception for all bridge errors."""

    status_code = 500

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ResourceNotFound(BridgeError):
    status_code = 404

    def __init__(self, resource_type: str, resource_id: object | None = None):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = resource_type
        if resource_id is not None:
            message += f" '{resource_id}'"
        super().__init__(f"{message} not found")


class InvalidTransition(BridgeError):
    """A state change was requested from a state that does not allow it."""

    status_code = 409


class ConfigurationError(BridgeError):
    status_code = 422


class AdmissionDenied(BridgeError):
    """The tenant is over quota or its circuit breaker is open."""

    status_code = 429

    def __init__(self, reason: str, retry_at: datetime | None = None):
        self.reason = reason
        self.retry_at = retry_at
        super().__init__(f"admission denied: {reason}", {"reason": reason})


class StaleClaim(BridgeError):
    """The worker no longer holds the lease on a queue item."""

    status_code = 409


class TicketCreationFailure(BridgeError):
    """The ticket system rejected or failed a create/update call."""

    status_code = 502


class PermanentTicketError(TicketCreationFailure):
    """A ticket failure that retrying will not fix (malformed payload, auth)."""
