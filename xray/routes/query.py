from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query, Request

from xray.errors import NotFoundError
from xray.models import isoformat
from xray.routes._deps import store_from_request, trace_id_from_request
from xray.schemas import success_envelope

router = APIRouter(prefix="/v1", tags=["query"])


def _ts(value: Any) -> Any:
    if isinstance(value, datetime):
        return isoformat(value)
    return value


def _metrics_view(metrics: dict[str, Any] | None) -> dict[str, Any] | None:
    if metrics is None:
        return None
    return {
        "candidatesIn": metrics.get("candidates_in"),
        "candidatesCaptured": metrics.get("candidates_captured"),
        "acceptedCount": metrics.get("accepted_count"),
        "rejectedCount": metrics.get("rejected_count"),
        "selectedCount": metrics.get("selected_count"),
        "rejectionRate": metrics.get("rejection_rate"),
        "rejectionHistogram": metrics.get("rejection_histogram") or {},
    }


def _run_view(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "runId": row["run_id"],
        "traceId": row.get("trace_id"),
        "pipeline": row.get("pipeline"),
        "pipelineVersion": row.get("pipeline_version"),
        "status": row.get("status"),
        "startedAt": _ts(row.get("started_at")),
        "endedAt": _ts(row.get("ended_at")),
        "durationMs": row.get("duration_ms"),
        "input": row.get("input"),
        "output": row.get("output"),
        "error": row.get("error"),
        "tags": row.get("tags") or {},
        "meta": row.get("meta") or {},
    }


def _step_view(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "stepId": row["step_id"],
        "runId": row.get("run_id"),
        "parentStepId": row.get("parent_step_id"),
        "name": row.get("name"),
        "type": row.get("type"),
        "status": row.get("status"),
        "startedAt": _ts(row.get("started_at")),
        "endedAt": _ts(row.get("ended_at")),
        "durationMs": row.get("duration_ms"),
        "input": row.get("input"),
        "output": row.get("output"),
        "reasoning": row.get("reasoning"),
        "meta": row.get("meta") or {},
        "capturePolicy": row.get("capture_policy") or {},
        "metrics": _metrics_view(row.get("metrics")),
    }


def _candidate_view(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "candidateId": row["candidate_id"],
        "candidateType": row["candidate_type"],
        "rank": row.get("rank"),
        "score": row.get("score"),
        "payload": row.get("payload"),
        "meta": row.get("meta") or {},
    }


def _outcome_view(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "candidateId": row["candidate_id"],
        "candidateType": row["candidate_type"],
        "outcome": row["outcome"],
        "reasonCode": row.get("reason_code"),
        "reasonDetail": row.get("reason_detail"),
        "reasoningText": row.get("reasoning_text"),
    }


@router.get("/runs")
def list_runs(
    request: Request,
    pipeline: str | None = None,
    trace_id: str | None = Query(default=None, alias="traceId"),
    limit: int = Query(default=50, ge=1, le=200),
):
    store = store_from_request(request)
    rows = store.runs_repository.list_runs(pipeline=pipeline, trace_id=trace_id, limit=limit)
    data = {"items": [_run_view(row) for row in rows], "total": len(rows)}
    return success_envelope(data, trace_id_from_request(request))


@router.get("/runs/{run_id}")
def get_run(run_id: str, request: Request):
    store = store_from_request(request)
    run = store.runs_repository.get(run_id=run_id)
    if run is None:
        raise NotFoundError(code="RUN_NOT_FOUND", message="run not found")
    steps = store.steps_repository.list_for_run(run_id=run_id)
    data = {"run": _run_view(run), "steps": [_step_view(row) for row in steps]}
    return success_envelope(data, trace_id_from_request(request))


@router.get("/steps/{step_id}")
def get_step(step_id: str, request: Request):
    store = store_from_request(request)
    step = store.steps_repository.get(step_id=step_id)
    if step is None:
        raise NotFoundError(code="STEP_NOT_FOUND", message="step not found")
    candidates = store.candidates_repository.list_candidates(step_id=step_id)
    outcomes = store.candidates_repository.list_outcomes(step_id=step_id)
    data = {
        "step": _step_view(step),
        "candidates": [_candidate_view(row) for row in candidates],
        "outcomes": [_outcome_view(row) for row in outcomes],
    }
    return success_envelope(data, trace_id_from_request(request))


@router.get("/query/steps")
def query_steps(
    request: Request,
    step_type: str | None = Query(default=None, alias="type"),
    name: str | None = None,
    min_rejection_rate: float = Query(default=0.9, ge=0.0, le=1.0, alias="minRejectionRate"),
    limit: int = Query(default=50, ge=1, le=200),
):
    store = store_from_request(request)
    rows = store.steps_repository.query_steps(
        step_type=step_type,
        name=name,
        min_rejection_rate=min_rejection_rate,
        limit=limit,
    )
    data = {"items": [_step_view(row) for row in rows], "total": len(rows)}
    return success_envelope(data, trace_id_from_request(request))
