"""
SSE 解码与出站帧编码。上游与 relay 共用，便于维护与单测。
"""

from __future__ import annotations

import json
from typing import AsyncGenerator, AsyncIterable, NamedTuple

from turnrelay.core.models import OutwardEnvelope

SSE_MEDIA_TYPE = "text/event-stream"
SSE_RESPONSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
SSE_DONE_SENTINEL = "[DONE]"
SSE_ERROR_EVENT = "error"


class SSEMessage(NamedTuple):
    event: str | None
    data: str


async def _iter_sse_messages(lines: AsyncIterable[str]) -> AsyncGenerator[SSEMessage, None]:
    """Group decoded SSE lines into messages, one per blank-line boundary.

    Only ``event:`` and ``data:`` are kept; ``id:``/``retry:`` and comments are dropped.
    A message without any ``data:`` line is not emitted.
    """
    event: str | None = None
    buffer: list[str] = []
    async for raw in lines:
        line = raw.rstrip("\r")
        if not line:
            if buffer:
                yield SSEMessage(event, "\n".join(buffer))
            event, buffer = None, []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            buffer.append(value)
        elif field == "event":
            event = value or None
    if buffer:
        yield SSEMessage(event, "\n".join(buffer))


def _encode_sse_frame(envelope: OutwardEnvelope) -> bytes:
    data = json.dumps(envelope.model_dump(), ensure_ascii=False, separators=(",", ":"))
    return f"data: {data}\n\n".encode("utf-8")
