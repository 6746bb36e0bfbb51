from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from app.core.errors import MalformedEvent


@dataclass(frozen=True)
class WebhookEvent:
    id: str | None
    type: str
    object: dict[str, Any]
    payload: dict[str, Any]


def parse_event(body: bytes | str) -> WebhookEvent:
    """Parse a verified webhook body into its `{type, data: {object}}` envelope."""
    try:
        payload = json.loads(body)
    except (TypeError, ValueError) as e:
        raise MalformedEvent("Invalid JSON") from e
    if not isinstance(payload, dict):
        raise MalformedEvent("Event envelope must be an object")

    etype = payload.get("type")
    if not isinstance(etype, str) or not etype:
        raise MalformedEvent("Event type is missing")
    data = payload.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise MalformedEvent("Event data.object is missing")

    event_id = payload.get("id")
    return WebhookEvent(
        id=event_id if isinstance(event_id, str) and event_id else None,
        type=etype,
        object=obj,
        payload=payload,
    )
