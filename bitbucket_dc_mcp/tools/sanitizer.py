"""Mask credentials before parameters reach the logs."""

from typing import Any

SENSITIVE_FIELDS = {
    "password",
    "token",
    "access_token",
    "refresh_token",
    "authorization",
    "credentials",
    "api_key",
    "apikey",
    "secret",
    "client_secret",
    "private_key",
    "privatekey",
    "session_token",
    "sessiontoken",
}

MASK = "***"


def is_sensitive(key: str) -> bool:
    return key.lower().replace("-", "_") in SENSITIVE_FIELDS


def sanitize(value: Any) -> Any:
    """Return a copy of `value` with sensitive keys masked at any depth."""
    if isinstance(value, dict):
        return {
            k: MASK if isinstance(k, str) and is_sensitive(k) else sanitize(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize(v) for v in value]
    return value
