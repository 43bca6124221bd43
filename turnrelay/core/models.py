"""Relay transport models.

Inbound conversations are kept opaque: ``messages`` and ``tools`` are forwarded to
the provider exactly as received. Upstream events are decoded into one variant per
known Responses stream event kind, with :class:`UnknownEvent` catching anything
newer than this module.
"""

from __future__ import annotations

from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError, model_validator


class ConversationRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    messages: list[Any]
    tools: list[Any] | None = None


class UpstreamEventBase(BaseModel):
    # strict：避免 pydantic 把上游数值/字符串悄悄转换，保证 payload 原样回传
    model_config = ConfigDict(extra="allow", frozen=True, strict=True)

    type: str

    _key_order: tuple[str, ...] = PrivateAttr(default=())

    @model_validator(mode="wrap")
    @classmethod
    def _remember_key_order(cls, data: Any, handler: Any) -> Any:
        event = handler(data)
        if isinstance(data, dict):
            event._key_order = tuple(data)
        return event

    def payload(self) -> dict[str, Any]:
        """Return exactly the fields the provider sent, unknown ones included, in the provider's order."""
        dumped = self.model_dump(exclude_unset=True, warnings=False)
        ordered = {key: dumped[key] for key in self._key_order if key in dumped}
        ordered.update(dumped)
        return ordered


class TextDeltaEvent(UpstreamEventBase):
    type: Literal["response.output_text.delta"]
    item_id: str | None = None
    output_index: int | None = None
    content_index: int | None = None
    delta: str = ""


class ToolCallArgumentsDeltaEvent(UpstreamEventBase):
    type: Literal["response.function_call_arguments.delta"]
    item_id: str | None = None
    output_index: int | None = None
    delta: str = ""


class ItemAddedEvent(UpstreamEventBase):
    type: Literal["response.output_item.added"]
    output_index: int | None = None
    item: dict[str, Any] = Field(default_factory=dict)


class ItemDoneEvent(UpstreamEventBase):
    type: Literal["response.output_item.done"]
    output_index: int | None = None
    item: dict[str, Any] = Field(default_factory=dict)


class ToolExecutionCompletedEvent(UpstreamEventBase):
    type: Literal["response.web_search_call.completed", "response.file_search_call.completed"]
    item_id: str | None = None
    output_index: int | None = None


class StreamErrorEvent(UpstreamEventBase):
    type: Literal["error"]
    code: str | None = None
    message: str = ""
    param: str | None = None


class StreamDoneEvent(UpstreamEventBase):
    type: Literal["response.completed"]
    response: dict[str, Any] = Field(default_factory=dict)


class UnknownEvent(UpstreamEventBase):
    type: str = "unknown"


UpstreamEvent = Union[
    TextDeltaEvent,
    ToolCallArgumentsDeltaEvent,
    ItemAddedEvent,
    ItemDoneEvent,
    ToolExecutionCompletedEvent,
    StreamErrorEvent,
    StreamDoneEvent,
    UnknownEvent,
]

_EVENT_MODELS: dict[str, type[UpstreamEventBase]] = {
    "response.output_text.delta": TextDeltaEvent,
    "response.function_call_arguments.delta": ToolCallArgumentsDeltaEvent,
    "response.output_item.added": ItemAddedEvent,
    "response.output_item.done": ItemDoneEvent,
    "response.web_search_call.completed": ToolExecutionCompletedEvent,
    "response.file_search_call.completed": ToolExecutionCompletedEvent,
    "error": StreamErrorEvent,
    "response.completed": StreamDoneEvent,
}


def parse_upstream_event(payload: dict[str, Any]) -> UpstreamEvent:
    kind = payload.get("type")
    model = _EVENT_MODELS.get(kind, UnknownEvent) if isinstance(kind, str) else UnknownEvent
    try:
        return model.model_validate(payload)
    except ValidationError:
        # 字段形状与文档不符时仍要完整转发
        event = UnknownEvent.model_construct(_fields_set=set(payload), **payload)
        event._key_order = tuple(payload)
        return event


class OutwardEnvelope(BaseModel):
    event: str
    data: dict[str, Any]
