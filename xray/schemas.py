from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from xray.models import MAX_BATCH_EVENTS

Status = Literal["running", "success", "error"]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class CandidateIn(WireModel):
    candidate_id: str = Field(min_length=1, max_length=256)
    candidate_type: str = Field(min_length=1, max_length=128)
    rank: int | None = None
    score: float | None = None
    payload: Any = None
    meta: dict[str, Any] | None = None


class OutcomeIn(WireModel):
    candidate_id: str = Field(min_length=1, max_length=256)
    candidate_type: str = Field(min_length=1, max_length=128)
    outcome: Literal["accepted", "rejected", "selected"]
    reason_code: str | None = Field(default=None, max_length=128)
    reason_detail: Any = None
    reasoning_text: str | None = None


class StepMetricsIn(WireModel):
    candidates_in: int = Field(ge=0)
    candidates_captured: int = Field(ge=0)
    accepted_count: int = Field(ge=0)
    rejected_count: int = Field(ge=0)
    selected_count: int = Field(ge=0)
    rejection_rate: float = Field(ge=0)


class RunIngestRequest(WireModel):
    run_id: str = Field(min_length=1, max_length=128)
    trace_id: str = Field(min_length=1, max_length=256)
    pipeline: str = Field(min_length=1, max_length=256)
    pipeline_version: str | None = None
    status: Status
    started_at: datetime
    ended_at: datetime | None = None
    duration_ms: int | None = Field(default=None, ge=0)
    input: Any = None
    output: Any = None
    error: Any = None
    tags: dict[str, Any] | None = None
    meta: dict[str, Any] | None = None


class StepIngestRequest(WireModel):
    step_id: str = Field(min_length=1, max_length=128)
    run_id: str = Field(min_length=1, max_length=128)
    parent_step_id: str | None = Field(default=None, max_length=128)
    name: str = Field(min_length=1, max_length=256)
    type: str = Field(min_length=1, max_length=128)
    status: Status
    started_at: datetime
    ended_at: datetime | None = None
    duration_ms: int | None = Field(default=None, ge=0)
    input: Any = None
    output: Any = None
    reasoning: Any = None
    meta: dict[str, Any] | None = None
    capture_policy: dict[str, Any] | None = None
    metrics: StepMetricsIn
    candidates: list[CandidateIn] = Field(default_factory=list)
    outcomes: list[OutcomeIn] = Field(default_factory=list)
    rejection_histogram: dict[str, int] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_consistency(self) -> "StepIngestRequest":
        if self.parent_step_id is not None and self.parent_step_id == self.step_id:
            raise ValueError("parentStepId must differ from stepId")
        if any(v < 0 for v in self.rejection_histogram.values()):
            raise ValueError("rejectionHistogram counts must be non-negative")
        if sum(self.rejection_histogram.values()) != self.metrics.rejected_count:
            raise ValueError("rejectionHistogram total must equal metrics.rejectedCount")
        return self


class BatchEventIn(BaseModel):
    kind: Literal["run", "step"]
    body: dict[str, Any]


class BatchIngestRequest(BaseModel):
    events: list[BatchEventIn] = Field(min_length=1, max_length=MAX_BATCH_EVENTS)


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: Any = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
