from __future__ import annotations

import hmac
import uuid
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from xray.errors import ApiError
from xray.schemas import error_envelope


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: Any = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
            details=details,
        ),
    )


def store_from_request(request: Request) -> Any:
    return request.app.state.store


def coordinator_from_request(request: Request) -> Any:
    return request.app.state.coordinator


def require_api_key(request: Request) -> None:
    expected = getattr(request.app.state, "api_key", "")
    if not expected:
        return
    provided = request.headers.get("x-api-key", "")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise ApiError(
            code="AUTH_UNAUTHORIZED",
            message="missing or invalid x-api-key",
            error_class="security_sensitive",
            retryable=False,
            http_status=401,
        )
