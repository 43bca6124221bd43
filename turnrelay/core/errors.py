"""Project error hierarchy."""


class TurnRelayError(Exception):
    """Base error."""

    status_code = 500
    code = "turnrelay_error"


class RequestInvalidError(TurnRelayError):
    """Raised when the inbound body cannot be decoded into a conversation request."""

    # 保持与线上一致：请求体错误返回 500 而不是 400
    status_code = 500
    code = "request_invalid"


class RouteNotFoundError(TurnRelayError):
    """Raised for POST requests outside the relay route."""

    status_code = 404
    code = "route_not_found"


class MethodNotAllowedError(TurnRelayError):
    """Raised for methods other than GET, POST and OPTIONS."""

    status_code = 405
    code = "method_not_allowed"


class UpstreamConnectError(TurnRelayError):
    """Raised when the upstream handshake fails before any event is read."""

    status_code = 500
    code = "upstream_connect_error"

    def __init__(self, message: str, *, upstream_status: int | None = None) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status


class UpstreamStreamError(TurnRelayError):
    """Raised when the upstream stream fails after streaming has begun."""

    code = "upstream_stream_error"


class ClientDisconnectedError(TurnRelayError):
    """Raised when the outward transport stops accepting writes."""

    code = "client_disconnected"
