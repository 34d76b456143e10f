from __future__ import annotations

import logging
import os
import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from xray.errors import ApiError
from xray.ingestion import IngestionCoordinator
from xray.routes._deps import error_response, trace_id_from_request
from xray.routes.ingest import router as ingest_router
from xray.routes.query import router as query_router
from xray.schemas import success_envelope
from xray.store import create_store_from_env

logger = logging.getLogger(__name__)


def create_app(store: Any = None, *, api_key: str | None = None) -> FastAPI:
    app = FastAPI(title="X-Ray Trace API", version="0.1.0")
    app.state.store = store if store is not None else create_store_from_env()
    app.state.coordinator = IngestionCoordinator(app.state.store)
    app.state.api_key = api_key if api_key is not None else os.environ.get("XRAY_API_KEY", "")

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        response = await call_next(request)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.http_status >= 500:
            logger.error("request %s failed: %s %s", request.url.path, exc.code, exc.message)
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
            details=exc.details,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
            for err in exc.errors()
        ]
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
            details=details,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/health")
    def health(request: Request) -> dict[str, object]:
        data = {"status": "ok", "store_backend": getattr(app.state.store, "backend_name", "unknown")}
        return success_envelope(data, trace_id_from_request(request))

    app.include_router(ingest_router)
    app.include_router(query_router)
    return app


app = create_app()
