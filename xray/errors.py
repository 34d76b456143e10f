from __future__ import annotations

from typing import Any


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.details = details


class ValidationError(ApiError):
    def __init__(self, message: str = "invalid payload", *, details: Any = None) -> None:
        super().__init__(
            code="REQ_VALIDATION_FAILED",
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
            details=details,
        )


class NotFoundError(ApiError):
    def __init__(self, *, code: str, message: str) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=404,
        )


class StorageConflict(ApiError):
    """Constraint violation the upsert keys could not absorb."""

    def __init__(self, message: str) -> None:
        super().__init__(
            code="STORAGE_CONFLICT",
            message=message,
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )


class TerminalStateConflict(ApiError):
    def __init__(self, *, entity: str, entity_id: str, current_status: str, new_status: str) -> None:
        super().__init__(
            code="TERMINAL_STATE_CONFLICT",
            message=f"{entity} {entity_id} is {current_status}; refusing transition to {new_status}",
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )
        self.entity = entity
        self.entity_id = entity_id
        self.current_status = current_status
        self.new_status = new_status


class XRayError(Exception):
    """Base class for producer-side SDK errors."""


class StepAlreadyFinalized(XRayError):
    def __init__(self, step_id: str, status: str) -> None:
        super().__init__(f"step {step_id} already finalized with status {status}")
        self.step_id = step_id
        self.status = status


class RunAlreadyFinalized(XRayError):
    def __init__(self, run_id: str, status: str) -> None:
        super().__init__(f"run {run_id} already finalized with status {status}")
        self.run_id = run_id
        self.status = status


class TransportError(XRayError):
    def __init__(self, message: str, *, retryable: bool = True, status_code: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code
