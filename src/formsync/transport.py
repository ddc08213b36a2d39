"""
Thin HTTP transport for outbound integration calls.

``ApiClient.send`` never raises for transport problems; timeouts and
connection failures come back as unsuccessful ``ApiResponse`` values whose
``error`` text the recovery engine can classify.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from loguru import logger

from formsync_client.utils import redact_secrets

SUPPORTED_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE"})


@dataclass
class ApiResponse:
    success: bool
    status_code: int = 0
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None


class ApiClient:
    """Sends requests through a shared ``httpx.Client``.

    Example:
        client = ApiClient(user_agent="formsync/1.0")
        resp = client.send("POST", url, json={"email": "a@x.com"}, timeout=30)
        if not resp.success:
            ...
    """

    def __init__(
        self,
        default_timeout: float = 30.0,
        user_agent: str = "formsync",
        client: Optional[httpx.Client] = None,
    ):
        self._default_timeout = default_timeout
        self._client = client or httpx.Client(headers={"User-Agent": user_agent})

    def close(self) -> None:
        self._client.close()

    def send(self, method: str, url: str, **options: Any) -> ApiResponse:
        """Issue a request.

        Options: ``headers``, ``params``, ``json``, ``data``, ``timeout``.
        """
        method = method.upper()
        if method not in SUPPORTED_METHODS:
            return ApiResponse(success=False, error=f"Unsupported HTTP method: {method}")

        timeout = options.pop("timeout", None) or self._default_timeout
        try:
            resp = self._client.request(method, url, timeout=timeout, **options)
        except httpx.TimeoutException as e:
            logger.warning(f"{method} {url} timed out after {timeout}s")
            return ApiResponse(success=False, error=f"Request timeout after {timeout}s: {e}")
        except httpx.TransportError as e:
            logger.warning(f"{method} {url} network failure: {type(e).__name__}")
            return ApiResponse(success=False, error=f"Network error: {redact_secrets(str(e))}")

        body = _decode_body(resp)
        success = 200 <= resp.status_code < 300
        error = None
        if not success:
            error = _error_text(resp.status_code, body)
            logger.debug(f"{method} {url} -> {resp.status_code}")
        return ApiResponse(
            success=success,
            status_code=resp.status_code,
            body=body,
            headers=dict(resp.headers),
            error=error,
        )


def _decode_body(resp: httpx.Response) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except (ValueError, json.JSONDecodeError):
        return resp.text


def _error_text(status_code: int, body: Any) -> str:
    detail = None
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("message") or body.get("error") or body.get("title")
    elif isinstance(body, str) and body.strip():
        detail = body.strip()[:200]
    text = f"HTTP {status_code}"
    if detail:
        text = f"{text}: {detail}"
    return redact_secrets(str(text))
