"""
Utility functions for the formsync client.

Includes time helpers, secret redaction and setting type conversion.
"""

import json
import re
from datetime import datetime, timezone
from typing import Any, Dict

SECRET_KEY_NEEDLES = ("api_key", "apikey", "access_token", "token", "password", "secret")

REDACTED = "***"

_SECRET_PATTERNS = [
    # Authorization: Bearer <token>
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9\-._~+/]+=*"),
    # apikey=..., api_key: ..., token=..., access_token=..., password=..., secret=...
    re.compile(
        r"(?i)\b(api[_-]?key|access[_-]?token|token|password|secret)(\s*[=:]\s*)([^\s&,;\"']+)"
    ),
    # Mailchimp style keys: 32 hex chars followed by a datacenter suffix
    re.compile(r"\b[0-9a-f]{32}-[a-z]{2}\d{1,2}\b"),
]


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(needle in lowered for needle in SECRET_KEY_NEEDLES)


def redact_secrets(text: str) -> str:
    """Mask credentials that may appear inside free-form error text."""
    if not text:
        return text
    out = _SECRET_PATTERNS[0].sub(lambda m: m.group(1) + REDACTED, text)
    out = _SECRET_PATTERNS[1].sub(lambda m: m.group(1) + m.group(2) + REDACTED, out)
    out = _SECRET_PATTERNS[2].sub(REDACTED, out)
    return out


def scrub_context(data: Any) -> Any:
    """Recursively mask values stored under secret-looking keys."""
    if isinstance(data, dict):
        return {
            k: (REDACTED if is_secret_key(str(k)) and v not in (None, "") else scrub_context(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [scrub_context(v) for v in data]
    if isinstance(data, str):
        return redact_secrets(data)
    return data


def setting_type_of(value: Any) -> str:
    """Type tag stored beside a setting value."""
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "float"
    if isinstance(value, (list, dict)):
        return "array"
    return "string"


def serialize_setting(value: Any) -> str:
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "1" if value else "0"
    return "" if value is None else str(value)


def convert_setting(raw: Any, setting_type: str) -> Any:
    """Turn a stored string back into its tagged type."""
    if setting_type == "boolean":
        return str(raw).strip().lower() in ("1", "true", "yes", "on")
    if setting_type == "integer":
        try:
            return int(raw)
        except (TypeError, ValueError):
            return 0
    if setting_type == "float":
        try:
            return float(raw)
        except (TypeError, ValueError):
            return 0.0
    if setting_type == "array":
        if isinstance(raw, (list, dict)):
            return raw
        try:
            decoded = json.loads(raw)
        except (TypeError, ValueError):
            return []
        return decoded if isinstance(decoded, (list, dict)) else []
    return raw


def json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def dumps(data: Dict[str, Any]) -> str:
    return json.dumps(data, default=json_default, sort_keys=True)
