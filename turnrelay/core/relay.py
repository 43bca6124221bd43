"""Relay stream controller: upstream events -> outward SSE frames."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from time import time
from typing import AsyncGenerator, Mapping

import anyio
from starlette.requests import ClientDisconnect
from starlette.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from turnrelay.adapters.openai_responses.mapper import to_outward_envelope
from turnrelay.adapters.openai_responses.stream_utils import (
    SSE_MEDIA_TYPE,
    SSE_RESPONSE_HEADERS,
    _encode_sse_frame,
)
from turnrelay.adapters.openai_responses.upstream import UpstreamEventStream
from turnrelay.core.errors import ClientDisconnectedError, UpstreamStreamError
from turnrelay.observability.logging import log_event
from turnrelay.util.logger import logger

REASON_CLIENT_DISCONNECTED = "client_disconnected"
REASON_UPSTREAM_STREAM_ERROR = "upstream_stream_error"


class RelayState(str, Enum):
    OPENING = "opening"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"


@dataclass(slots=True)
class RelaySession:
    request_id: str
    upstream: UpstreamEventStream
    state: RelayState = RelayState.OPENING
    events_relayed: int = 0
    error_reason: str | None = None
    started_at: float = field(default_factory=time)

    @property
    def finished(self) -> bool:
        return self.state in (RelayState.COMPLETED, RelayState.ERRORED)


class RelayStreamController:
    """Pipes one upstream event sequence into SSE frames, one event at a time.

    The next upstream event is only pulled after the previous frame has been taken
    by the consumer, so a slow client holds back the provider instead of filling a
    queue. Whatever ends the session (exhaustion, upstream fault, client going away)
    the upstream response is closed before the session is reported finished.
    """

    def __init__(self, session: RelaySession) -> None:
        self.session = session
        self._frames: AsyncGenerator[bytes, None] | None = None
        self._closed = False

    def frames(self) -> AsyncGenerator[bytes, None]:
        if self._frames is None:
            self._frames = self._relay()
        return self._frames

    async def _relay(self) -> AsyncGenerator[bytes, None]:
        session = self.session
        try:
            async for event in session.upstream:
                yield _encode_sse_frame(to_outward_envelope(event))
                session.events_relayed += 1
                if session.state is RelayState.OPENING:
                    session.state = RelayState.STREAMING
        except UpstreamStreamError as exc:
            self._mark_errored(REASON_UPSTREAM_STREAM_ERROR, exc)
            raise
        except (asyncio.CancelledError, GeneratorExit):
            self._mark_errored(REASON_CLIENT_DISCONNECTED)
            raise
        except Exception as exc:
            self._mark_errored(REASON_UPSTREAM_STREAM_ERROR, exc)
            raise UpstreamStreamError(f"upstream_stream_error: {exc}") from exc
        else:
            session.state = RelayState.COMPLETED
        finally:
            await self._close()

    def _mark_errored(self, reason: str, exc: BaseException | None = None) -> None:
        session = self.session
        if session.finished:
            return
        session.state = RelayState.ERRORED
        session.error_reason = reason
        if reason == REASON_CLIENT_DISCONNECTED:
            logger.warning(
                "relay client disconnected request_id=%s events=%d",
                session.request_id,
                session.events_relayed,
            )
            return
        logger.error(
            "relay stream failed request_id=%s events=%d error=%s",
            session.request_id,
            session.events_relayed,
            exc,
        )

    async def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        session = self.session
        # 客户端断开时所在的 cancel scope 已被取消，清理需屏蔽取消才能真正关闭上游连接
        with anyio.CancelScope(shield=True):
            await session.upstream.aclose()
        log_event(
            "relay_session_finished",
            level=logging.INFO if session.state is RelayState.COMPLETED else logging.WARNING,
            request_id=session.request_id,
            state=session.state.value,
            events=session.events_relayed,
            reason=session.error_reason,
            duration_ms=round((time() - session.started_at) * 1000, 1),
        )

    async def abort(self, reason: str = REASON_CLIENT_DISCONNECTED) -> None:
        """Terminate the session from the outward side; safe to call repeatedly."""
        self._mark_errored(reason)
        with anyio.CancelScope(shield=True):
            if self._frames is not None:
                await self._frames.aclose()
            await self._close()


class RelayStreamingResponse(StreamingResponse):
    """SSE response that owns its relay controller for the lifetime of the body."""

    def __init__(self, controller: RelayStreamController, headers: Mapping[str, str] | None = None) -> None:
        merged = dict(SSE_RESPONSE_HEADERS)
        merged.update(headers or {})
        super().__init__(controller.frames(), media_type=SSE_MEDIA_TYPE, headers=merged)
        self.controller = controller

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except (OSError, ClientDisconnect) as exc:
            await self.controller.abort(REASON_CLIENT_DISCONNECTED)
            raise ClientDisconnectedError(
                f"client_disconnected: request_id={self.controller.session.request_id}"
            ) from exc
        finally:
            await self.controller.abort(REASON_CLIENT_DISCONNECTED)
