"""
上游 Responses 流式调用：握手、SSE 解码为类型化事件。从 gateway 拆出，便于维护与单测。
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncGenerator, AsyncIterator
from urllib.parse import urlparse, urlunparse

import httpx

from turnrelay.adapters.openai_responses.stream_utils import (
    SSE_DONE_SENTINEL,
    SSE_ERROR_EVENT,
    SSEMessage,
    _iter_sse_messages,
)
from turnrelay.config.settings import settings
from turnrelay.core.errors import UpstreamConnectError, UpstreamStreamError
from turnrelay.core.models import ConversationRequest, UpstreamEvent, parse_upstream_event
from turnrelay.util.logger import logger

RESPONSES_PATH = "/responses"


def _normalize_upstream_base(raw_base: str) -> str:
    candidate = raw_base.strip()
    parsed = urlparse(candidate)
    if parsed.scheme not in {"http", "https"}:
        raise ValueError("invalid_upstream_scheme")
    if not parsed.netloc:
        raise ValueError("invalid_upstream_host")
    if parsed.query or parsed.fragment:
        raise ValueError("invalid_upstream_query_fragment")
    cleaned_path = parsed.path.rstrip("/")
    return urlunparse((parsed.scheme, parsed.netloc, cleaned_path, "", "", ""))


def _decode_json_or_text(body: bytes) -> dict[str, Any] | str:
    text = body.decode("utf-8", errors="replace")
    if not text:
        return ""
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
        return text
    except json.JSONDecodeError:
        return text


def _safe_error_detail(payload: dict[str, Any] | str) -> str:
    if isinstance(payload, str):
        return payload[:600]
    error = payload.get("error")
    if isinstance(error, str):
        return error[:600]
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"][:600]
    # event: error 帧的数据是 {"type":"error","code":...,"message":...}
    if isinstance(payload.get("message"), str):
        return payload["message"][:600]
    return json.dumps(payload, ensure_ascii=False)[:600]


def _http_error_detail(exc: httpx.HTTPError) -> str:
    return (str(exc) or "").strip() or exc.__class__.__name__


def _decode_event(message: SSEMessage) -> UpstreamEvent:
    try:
        payload = json.loads(message.data)
    except json.JSONDecodeError as exc:
        raise UpstreamStreamError(f"upstream_decode_error: {exc}") from exc
    if not isinstance(payload, dict):
        raise UpstreamStreamError("upstream_decode_error: event payload is not an object")
    # SDK 行为：event: error 帧或带顶层 error 字段的数据视为上游故障抛出，而不是普通事件
    if message.event == SSE_ERROR_EVENT or payload.get("error"):
        raise UpstreamStreamError(f"upstream_error_event: {_safe_error_detail(payload)}")
    return parse_upstream_event(payload)


class UpstreamEventStream:
    """Single-pass async iterator over one streaming ``/responses`` call."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self._events: AsyncGenerator[UpstreamEvent, None] | None = None
        self._closed = False

    def __aiter__(self) -> AsyncIterator[UpstreamEvent]:
        if self._events is not None:
            raise RuntimeError("upstream_stream_already_consumed")
        self._events = self._iter_events()
        return self._events

    async def _iter_events(self) -> AsyncGenerator[UpstreamEvent, None]:
        try:
            async for message in _iter_sse_messages(self._response.aiter_lines()):
                if message.data.strip() == SSE_DONE_SENTINEL:
                    return
                yield _decode_event(message)
        except httpx.HTTPError as exc:
            detail = _http_error_detail(exc)
            logger.warning("upstream stream interrupted url=%s error=%s", self._response.url, detail)
            raise UpstreamStreamError(f"upstream_stream_interrupted: {detail}") from exc

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._events is not None:
            await self._events.aclose()
        await self._response.aclose()
        logger.debug("upstream stream closed url=%s", self._response.url)


class UpstreamStreamingClient:
    """Streaming client for the provider's Responses endpoint.

    Credentials and endpoint are passed in explicitly so tests can point the client
    at a stub transport. The underlying ``httpx.AsyncClient`` is created lazily and
    shared by every session opened through this instance.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 60.0,
        max_connections: int = 100,
        max_keepalive_connections: int = 20,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = _normalize_upstream_base(base_url)
        self.timeout_seconds = float(timeout_seconds)
        self.max_connections = max_connections
        self.max_keepalive_connections = max_keepalive_connections
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock: asyncio.Lock | None = None

    def _http_limits(self) -> httpx.Limits:
        return httpx.Limits(
            max_connections=max(10, int(self.max_connections)),
            max_keepalive_connections=max(5, int(self.max_keepalive_connections)),
        )

    def _http_timeout(self) -> httpx.Timeout:
        timeout = self.timeout_seconds
        return httpx.Timeout(connect=timeout, read=timeout, write=timeout, pool=timeout)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        if self._client_lock is None:
            self._client_lock = asyncio.Lock()
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    http2=False,
                    timeout=self._http_timeout(),
                    limits=self._http_limits(),
                    transport=self._transport,
                )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def responses_url(self) -> str:
        return f"{self.base_url}{RESPONSES_PATH}"

    def build_payload(self, conversation: ConversationRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "input": conversation.messages,
            "stream": True,
            "parallel_tool_calls": False,
        }
        if conversation.tools is not None:
            payload["tools"] = conversation.tools
        return payload

    def _build_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    async def open_stream(self, conversation: ConversationRequest) -> UpstreamEventStream:
        """Issue the streaming call and return once the provider has accepted it.

        Raises :class:`UpstreamConnectError` when the connection fails or the provider
        answers the handshake with an error status; no event has been read then.
        """
        url = self.responses_url
        body = json.dumps(self.build_payload(conversation), ensure_ascii=False).encode("utf-8")
        logger.debug(
            "open_stream start url=%s model=%s messages=%d tools=%d payload_bytes=%d",
            url,
            self.model,
            len(conversation.messages),
            len(conversation.tools or []),
            len(body),
        )
        client = await self._get_client()
        request = client.build_request("POST", url, content=body, headers=self._build_headers())
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            detail = _http_error_detail(exc)
            logger.warning("open_stream http_error url=%s error=%s", url, detail)
            raise UpstreamConnectError(f"upstream_unreachable: {detail}") from exc

        if response.status_code >= 400:
            try:
                detail = _safe_error_detail(_decode_json_or_text(await response.aread()))
            except httpx.HTTPError as exc:
                detail = _http_error_detail(exc)
            finally:
                await response.aclose()
            logger.warning("open_stream rejected url=%s status=%s detail=%s", url, response.status_code, detail)
            raise UpstreamConnectError(
                f"upstream_http_error:{response.status_code}:{detail}",
                upstream_status=response.status_code,
            )

        logger.debug("open_stream connected url=%s status=%s", url, response.status_code)
        return UpstreamEventStream(response)


_upstream_client: UpstreamStreamingClient | None = None


def _get_upstream_client() -> UpstreamStreamingClient:
    global _upstream_client
    if _upstream_client is None:
        _upstream_client = UpstreamStreamingClient(
            api_key=settings.openai_api_key,
            model=settings.model,
            base_url=settings.upstream_base_url,
            timeout_seconds=settings.upstream_timeout_seconds,
            max_connections=settings.upstream_max_connections,
            max_keepalive_connections=settings.upstream_max_keepalive_connections,
        )
    return _upstream_client


async def close_upstream_client() -> None:
    global _upstream_client
    if _upstream_client is not None:
        await _upstream_client.aclose()
        _upstream_client = None
