"""
Integration adapters turn a queue item into an outbound request.

The pipeline treats each third-party API as opaque; an adapter only knows how
to address it and where to find the remote batch id in its response.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Sequence

from formsync_client.errors import ValidationError
from formsync_client.models import FieldMapping, Operation, QueueItem

_METHODS = {
    Operation.SUBSCRIBE: "POST",
    Operation.UPDATE: "PUT",
    Operation.UNSUBSCRIBE: "DELETE",
}


@dataclass
class OutboundRequest:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    json: Optional[dict[str, Any]] = None


def map_fields(payload: dict[str, Any], mappings: Sequence[FieldMapping]) -> dict[str, Any]:
    """Rename submitted form fields to the integration's field names.

    Only mapped fields with a value are sent, and ``email`` is always carried
    over. A required mapping with no value raises ValidationError.
    """
    out: dict[str, Any] = {}
    for m in sorted(mappings, key=lambda m: m.mapping_order):
        value = payload.get(m.form_field)
        if value is None or value == "" or value == []:
            if m.is_required:
                raise ValidationError(f"Required field {m.form_field!r} is empty")
            continue
        out[m.integration_field] = value
    if payload.get("email"):
        out.setdefault("email", payload["email"])
    return out


class IntegrationAdapter(Protocol):
    integration_id: str

    def build_request(self, item: QueueItem, settings: dict[str, Any]) -> OutboundRequest: ...

    def remote_batch_id(self, body: Any) -> Optional[str]: ...


class JsonApiAdapter:
    """Generic JSON API adapter.

    Reads ``base_url`` and ``api_key`` from the integration settings and sends
    the item payload to ``{base_url}/lists/{list_id}/members``.
    """

    BATCH_ID_FIELDS = ("batch_id", "id")

    def __init__(self, integration_id: str, path: str = "/lists/{list_id}/members"):
        self.integration_id = integration_id
        self._path = path

    def build_request(self, item: QueueItem, settings: dict[str, Any]) -> OutboundRequest:
        base_url = str(settings.get("base_url") or "").rstrip("/")
        if not base_url:
            raise ValidationError(f"{self.integration_id}: base_url is not configured")
        headers = {"Accept": "application/json"}
        api_key = settings.get("api_key")
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return OutboundRequest(
            method=_METHODS[item.operation],
            url=base_url + self._path.format(list_id=item.list_id),
            headers=headers,
            json=dict(item.payload),
        )

    def remote_batch_id(self, body: Any) -> Optional[str]:
        if not isinstance(body, dict):
            return None
        for name in self.BATCH_ID_FIELDS:
            if body.get(name):
                return str(body[name])
        return None
