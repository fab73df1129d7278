from __future__ import annotations

import hashlib
import re
from typing import Any


REDACTED = "[REDACTED]"

# GNAP credentials as they appear in headers or free text
_GNAP_AUTH_RE = re.compile(r"\b(GNAP|Bearer)\s+[A-Za-z0-9._~+/=-]+", re.IGNORECASE)

# Callback query values that would let someone replay a funder's approval
_CALLBACK_PARAM_RE = re.compile(r"([?&](?:interact_ref|hash)=)[^&#\s\"']+")

# Grant response bodies carrying a token are dropped wholesale
_TOKEN_BODY_MARKERS = ("access_token", "continue_token")

_SENSITIVE_KEY_RE = re.compile(
    r"token|authorization|secret|signature|password|nonce|continuation|interact_ref",
    re.IGNORECASE,
)


def fingerprint(secret: str | None) -> str:
    """
    Stable, non-reversible handle for a credential.

    Lets callers and logs refer to a token without ever carrying it.
    """
    if not secret:
        return ""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:16]


def redact_text(value: str) -> str:
    lowered = value.lower()
    if any(marker in lowered for marker in _TOKEN_BODY_MARKERS):
        return REDACTED

    value = _GNAP_AUTH_RE.sub(lambda m: f"{m.group(1)} {REDACTED}", value)
    return _CALLBACK_PARAM_RE.sub(lambda m: m.group(1) + REDACTED, value)


def is_sensitive_key(key: Any) -> bool:
    return isinstance(key, str) and bool(_SENSITIVE_KEY_RE.search(key))


def redact_value(value: Any) -> Any:
    """Walk JSON-like data, masking credentials in strings and under sensitive keys."""
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return redact_dict(value)
    if isinstance(value, (list, tuple)):
        return [redact_value(item) for item in value]
    return value


def redact_dict(payload: dict[str, Any]) -> dict[str, Any]:
    return {
        key: REDACTED if is_sensitive_key(key) else redact_value(item)
        for key, item in payload.items()
    }
