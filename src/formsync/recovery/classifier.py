"""
Failure classification and user-facing error messages.

Classification is pattern based: the lower-cased message is matched against
known transient phrases and API failures are additionally judged by status
code. Anything not recognised is fatal.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from formsync_client.errors import (
    FatalIntegrationError,
    IntegrationError,
    TransientIntegrationError,
)
from formsync_client.utils import redact_secrets


class Classification(str, Enum):
    RECOVERABLE = "recoverable"
    FATAL = "fatal"


class ErrorKind(str, Enum):
    """Recovery strategy selector."""

    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NETWORK = "network"
    TEMPORARY = "temporary"
    FATAL = "fatal"


RECOVERABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

RECOVERABLE_PATTERNS = (
    "timeout",
    "rate limit",
    "temporary",
    "maintenance",
    "service unavailable",
    "network",
)

USER_MESSAGES = {
    400: "Invalid request. Please check your settings.",
    401: "Authentication failed. Please check your API credentials.",
    403: "Access denied. Please check your API permissions.",
    404: "Resource not found. Please check your configuration.",
    408: "Request timed out. Please try again.",
    429: "Too many requests. Please wait a moment and try again.",
    500: "Server error. Please try again later.",
    502: "Bad gateway. Please try again later.",
    503: "Service unavailable. Please try again later.",
    504: "Gateway timeout. Please try again later.",
}


def error_message(error: BaseException) -> str:
    if isinstance(error, IntegrationError):
        return error.message
    return str(error)


def error_status(error: BaseException) -> int:
    return int(getattr(error, "status_code", 0) or 0)


def user_message(status_code: Optional[int], raw: str) -> str:
    """Safe message for display. Falls back to the redacted raw message."""
    if status_code and status_code in USER_MESSAGES:
        return USER_MESSAGES[status_code]
    return redact_secrets(raw or "") or "Unknown error"


class ErrorClassifier:
    def kind(self, error: BaseException) -> ErrorKind:
        message = error_message(error).lower()
        status = error_status(error)

        if "rate limit" in message or status == 429:
            return ErrorKind.RATE_LIMIT
        if "timeout" in message or "timed out" in message or status == 408:
            return ErrorKind.TIMEOUT
        if "network" in message:
            return ErrorKind.NETWORK
        if status in RECOVERABLE_STATUS_CODES or any(p in message for p in RECOVERABLE_PATTERNS):
            return ErrorKind.TEMPORARY
        return ErrorKind.FATAL

    def classify(self, error: BaseException) -> Classification:
        if self.kind(error) is ErrorKind.FATAL:
            return Classification.FATAL
        return Classification.RECOVERABLE

    def to_integration_error(self, message: str, status_code: Optional[int] = None) -> IntegrationError:
        """Wrap a raw failure in the matching integration error type."""
        candidate = IntegrationError(message, status_code)
        if self.classify(candidate) is Classification.RECOVERABLE:
            return TransientIntegrationError(message, status_code)
        return FatalIntegrationError(message, status_code)
