"""Inbound body <-> ConversationRequest, upstream event -> outward envelope."""

from __future__ import annotations

import json
from typing import Any

from turnrelay.core.errors import RequestInvalidError
from turnrelay.core.models import ConversationRequest, OutwardEnvelope, UpstreamEvent


def decode_request_body(body: bytes) -> Any:
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise RequestInvalidError(f"Invalid JSON body: {exc}") from exc


def to_conversation_request(payload: Any) -> ConversationRequest:
    if not isinstance(payload, dict):
        raise RequestInvalidError("Request body must be a JSON object")
    messages = payload.get("messages")
    if not isinstance(messages, list):
        raise RequestInvalidError("'messages' must be an array")
    tools = payload.get("tools")
    if tools is not None and not isinstance(tools, list):
        raise RequestInvalidError("'tools' must be an array when provided")
    return ConversationRequest(messages=messages, tools=tools)


def to_outward_envelope(event: UpstreamEvent) -> OutwardEnvelope:
    kind = event.type if isinstance(event.type, str) else "unknown"
    return OutwardEnvelope(event=kind, data=event.payload())
