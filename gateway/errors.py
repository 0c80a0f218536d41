from __future__ import annotations

from typing import Any, Dict, Optional

from .schemas.openai import ErrorBody, ErrorResponse


def error_type_for_status(status: int) -> str:
    t = "api_error"
    if status == 400:
        t = "invalid_request_error"
    elif status == 401:
        t = "authentication_error"
    elif status == 403:
        t = "permission_error"
    elif status == 404:
        t = "not_found_error"
    elif status == 429:
        t = "rate_limit_error"
    elif 500 <= status < 600:
        t = "server_error"
    return t


def error_envelope(
    status: int,
    message: str,
    *,
    type: Optional[str] = None,
    param: Optional[str] = None,
    code: Optional[str] = None,
) -> Dict[str, Any]:
    body = ErrorBody(message=message, type=type or error_type_for_status(status), param=param, code=code)
    return ErrorResponse(error=body).model_dump()


class GatewayError(RuntimeError):
    """Base for failures that end a request; carries the HTTP mapping."""

    status_code: int = 500
    error_type: str = "server_error"
    code: Optional[str] = None

    def __init__(self, message: str, *, param: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.param = param

    def to_envelope(self) -> Dict[str, Any]:
        return error_envelope(
            self.status_code, self.message, type=self.error_type, param=self.param, code=self.code
        )


class InvalidRequest(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"


class UpstreamUnavailable(GatewayError):
    """Connect, DNS or timeout failure talking to a provider."""

    code = "upstream_unavailable"


class UpstreamRejected(GatewayError):
    """Provider answered with a non-2xx status."""

    code = "upstream_rejected"

    def __init__(self, message: str, *, upstream_status: int) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status
        self.error_type = error_type_for_status(upstream_status)
        if self.error_type == "invalid_request_error":
            self.error_type = "api_error"


class SessionBootstrapFailed(GatewayError):
    code = "session_bootstrap_failed"


class EmptyReasoningResult(GatewayError):
    code = "empty_reasoning_result"


class DownstreamDisconnected(GatewayError):
    """Client went away; aborts upstream I/O without reporting anything."""

    code = "client_disconnected"
