"""FastAPI app entry."""

from __future__ import annotations

import json
import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, Response
from starlette.datastructures import MutableHeaders
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from turnrelay.adapters.openai_responses.mapper import decode_request_body, to_conversation_request
from turnrelay.adapters.openai_responses.upstream import _get_upstream_client, close_upstream_client
from turnrelay.config.settings import settings
from turnrelay.core.docs_page import render_docs_page
from turnrelay.core.errors import (
    MethodNotAllowedError,
    RequestInvalidError,
    RouteNotFoundError,
    TurnRelayError,
    UpstreamConnectError,
)
from turnrelay.core.models import ConversationRequest
from turnrelay.core.relay import RelaySession, RelayStreamController, RelayStreamingResponse
from turnrelay.util.logger import logger

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

# 调试时完整请求内容最大输出长度，避免日志过长
_DEBUG_REQUEST_BODY_MAX_CHARS = 32000
_DEBUG_HEADERS_REDACT = frozenset({"authorization", "cookie", "x-api-key"})


def _error_response(status_code: int, message: str, headers: dict[str, str] | None = None) -> JSONResponse:
    merged = dict(CORS_HEADERS)
    merged.update(headers or {})
    return JSONResponse(status_code=status_code, content={"error": message}, headers=merged)


class CorsHeadersMiddleware:
    """
    最外层 ASGI 中间件：OPTIONS 预检直接 204；所有响应（含错误、SSE）补齐 CORS 头；
    响应开始前的未处理异常转为 500 JSON，开始后则继续抛出由服务器中断连接。
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        if str(scope.get("method") or "").upper() == "OPTIONS":
            preflight = Response(status_code=204, headers=CORS_HEADERS)
            await preflight(scope, receive, send)
            return

        response_started = False

        async def send_with_cors(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
                headers = MutableHeaders(scope=message)
                for key, value in CORS_HEADERS.items():
                    headers[key] = value
            await send(message)

        try:
            await self.app(scope, receive, send_with_cors)
        except Exception as exc:
            if response_started:
                raise
            logger.exception("gateway unhandled exception path=%s", scope.get("path"))
            response = _error_response(500, str(exc) or exc.__class__.__name__)
            await response(scope, receive, send)


# 所有 GET 都返回静态说明页，关闭 FastAPI 自带的 /docs 与 /openapi.json
app = FastAPI(title=settings.app_name, docs_url=None, redoc_url=None, openapi_url=None)


# 仅注册响应开始前的错误；流中错误（UpstreamStreamError / ClientDisconnectedError）原样抛给服务器
@app.exception_handler(RequestInvalidError)
@app.exception_handler(RouteNotFoundError)
@app.exception_handler(MethodNotAllowedError)
@app.exception_handler(UpstreamConnectError)
async def turnrelay_error_handler(request: Request, exc: TurnRelayError) -> JSONResponse:
    logger.warning(
        "request failed method=%s path=%s code=%s status=%s error=%s",
        request.method,
        request.url.path,
        exc.code,
        exc.status_code,
        exc,
    )
    return _error_response(exc.status_code, str(exc) or exc.code)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 405:
        mapped: TurnRelayError = MethodNotAllowedError("Method not allowed")
    elif exc.status_code == 404:
        mapped = RouteNotFoundError("Not found")
    else:
        return _error_response(exc.status_code, str(exc.detail), headers=exc.headers)
    response = await turnrelay_error_handler(request, mapped)
    for key, value in (exc.headers or {}).items():
        response.headers[key] = value
    return response


def _log_request_if_debug(request: Request, conversation: ConversationRequest, request_id: str) -> None:
    """当 TURNRELAY_LOG_LEVEL=debug 时打请求概要（method/path/headers/body_size）；正文按 log_full_request_body 决定是否打印。"""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    headers_safe = {}
    for k, v in request.headers.items():
        key_lower = k.lower()
        if key_lower in _DEBUG_HEADERS_REDACT or "key" in key_lower or "secret" in key_lower or "token" in key_lower:
            headers_safe[k] = "***"
        else:
            headers_safe[k] = v
    body_str = json.dumps(conversation.model_dump(exclude_none=True), ensure_ascii=False, indent=2)
    logger.debug(
        "incoming request request_id=%s method=%s path=%s headers=%s body_size=%d",
        request_id,
        request.method,
        request.url.path,
        headers_safe,
        len(body_str),
    )
    if settings.log_full_request_body:
        logger.debug("incoming request body (%d chars):\n%s", len(body_str), body_str[:_DEBUG_REQUEST_BODY_MAX_CHARS])


@app.get("/health")
def health() -> dict:
    logger.info("health check")
    return {"status": "ok"}


async def turn_response(request: Request) -> Response:
    """Relay one conversation turn from the provider as an SSE stream."""
    request_id = (request.headers.get("x-request-id") or "").strip() or uuid.uuid4().hex
    conversation = to_conversation_request(decode_request_body(await request.body()))
    _log_request_if_debug(request, conversation, request_id)

    # 握手失败（UpstreamConnectError）在此抛出，此时尚未发送任何响应字节
    upstream = await _get_upstream_client().open_stream(conversation)
    session = RelaySession(request_id=request_id, upstream=upstream)
    logger.info(
        "relay session opened request_id=%s messages=%d tools=%d",
        request_id,
        len(conversation.messages),
        len(conversation.tools or []),
    )
    return RelayStreamingResponse(RelayStreamController(session), headers={"X-Request-Id": request_id})


app.add_api_route(settings.relay_route_path, turn_response, methods=["POST"])


@app.get("/{full_path:path}", response_class=HTMLResponse)
async def docs_page(full_path: str) -> HTMLResponse:
    return HTMLResponse(content=render_docs_page(settings.relay_route_path))


@app.post("/{full_path:path}")
async def unknown_post_route(full_path: str) -> Response:
    raise RouteNotFoundError("Not found")


@app.on_event("startup")
async def startup_log() -> None:
    logger.info(
        "%s started env=%s model=%s upstream=%s route=%s",
        settings.app_name,
        settings.env,
        settings.model,
        settings.upstream_base_url,
        settings.relay_route_path,
    )
    if not settings.openai_api_key:
        logger.warning("openai api key is empty; upstream calls will be rejected by the provider")


@app.on_event("shutdown")
async def shutdown_cleanup() -> None:
    await close_upstream_client()


# CORS 必须包住所有响应（含异常兜底），因此作为最外层 ASGI middleware 注册
app.add_middleware(CorsHeadersMiddleware)


def main() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
