"""Redaction of personal data and secrets before alerts are stored or forwarded."""

from __future__ import annotations

import re
from typing import Any, Iterable

_EMAIL = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_JWT = re.compile(r"eyJ[a-zA-Z0-9_-]+\.eyJ[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+")
_API_KEY = re.compile(r"((?:api[_-]?key|token|secret|password|auth)[=:][\"']?)([a-zA-Z0-9_-]{20,})", re.IGNORECASE)
_IP = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")
_PHONE = re.compile(r"(?<![\w.])\+?\(?\d[\d\s().-]{6,}\d(?![\w.])")
_LONG_HEX = re.compile(r"\b[a-fA-F0-9]{41,}\b")
_LOCAL_PATH = re.compile(r"/(?:Users|home|var|tmp)/[^\s,;]+")
_WINDOWS_PATH = re.compile(r"[A-Z]:\\[^\s,;]+")

_SENSITIVE_KEYS = {"password", "secret", "token", "apikey", "api_key", "authorization"}

MAX_TAG_VALUE_LENGTH = 50


def _redact_phone(match: re.Match) -> str:
    value = match.group(0)
    # Bare digit runs are ids (Sentry issue ids are numeric), not phone numbers.
    if value.isdigit():
        return value
    digits = re.sub(r"\D", "", value)
    return "[PHONE_REDACTED]" if len(digits) >= 7 else value


def redact_text(text: str) -> str:
    """Replace emails, tokens, IPs, phone numbers and local paths in ``text``."""
    if not text or not isinstance(text, str):
        return text
    text = _EMAIL.sub("[EMAIL_REDACTED]", text)
    text = _JWT.sub("[JWT_REDACTED]", text)
    text = _API_KEY.sub(lambda m: f"{m.group(1)}[API_KEY_REDACTED]", text)
    text = _IP.sub("[IP_REDACTED]", text)
    text = _PHONE.sub(_redact_phone, text)
    text = _LONG_HEX.sub("[LONG_HEX_REDACTED]", text)
    text = _LOCAL_PATH.sub(lambda m: "[PATH]/" + m.group(0).rsplit("/", 1)[-1], text)
    text = _WINDOWS_PATH.sub(lambda m: "[PATH]\\" + m.group(0).rsplit("\\", 1)[-1], text)
    return text


def redact_object(obj: Any) -> Any:
    """Recursively redact strings; values under secret-looking keys are dropped."""
    if isinstance(obj, str):
        return redact_text(obj)
    if isinstance(obj, list):
        return [redact_object(item) for item in obj]
    if isinstance(obj, dict):
        redacted = {}
        for key, value in obj.items():
            if str(key).lower() in _SENSITIVE_KEYS:
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = redact_object(value)
        return redacted
    return obj


def filter_tags(tags: Iterable[tuple[str, str]], allowlist: Iterable[str]) -> dict[str, str]:
    """Keep only allow-listed tag keys, with redacted and truncated values."""
    allowed = set(allowlist)
    return {
        key: redact_text(value)[:MAX_TAG_VALUE_LENGTH]
        for key, value in tags
        if key in allowed
    }
