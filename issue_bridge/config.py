"""Configuration for issue-bridge."""

import json
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode

DEFAULT_ALLOWLISTED_TAGS = [
    "deal_id",
    "pipeline_stage",
    "integration",
    "operation",
    "feature",
    "org_id",
    "environment",
    "release",
]


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./issue_bridge.db"
    api_prefix: str = "/api/v1"
    debug: bool = False

    # Worker
    worker_id: str = ""
    claim_batch_size: int = 10
    lease_seconds: int = 300
    poll_interval_seconds: float = 5.0
    default_max_attempts: int = 3
    # How long an item is parked when a tenant's rate limit denies admission
    admission_hold_seconds: int = 300

    # Ticket system
    ticket_api_base_url: str = ""
    ticket_api_token: str = ""
    ticket_due_days: int = 3

    # Slack
    slack_bot_token: str = ""
    slack_channel: str = ""

    # Sentry, used for issue links in ticket descriptions
    sentry_base_url: str = "https://sentry.io"

    default_allowlisted_tags: Annotated[list[str], NoDecode] = DEFAULT_ALLOWLISTED_TAGS

    model_config = {"env_prefix": "BRIDGE_"}

    @field_validator("default_allowlisted_tags", mode="before")
    @classmethod
    def _parse_default_allowlisted_tags(cls, value: object) -> object:
        if value in (None, ""):
            return []
        if isinstance(value, list):
            return value
        if isinstance(value, str):
            if value.lstrip().startswith("["):
                return json.loads(value)
            return [part.strip() for part in value.split(",") if part.strip()]
        raise TypeError("default_allowlisted_tags must be a list, JSON array or comma-separated string")


settings = Settings()
