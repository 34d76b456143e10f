from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from xray.routes._deps import coordinator_from_request, require_api_key, trace_id_from_request
from xray.schemas import BatchIngestRequest, RunIngestRequest, StepIngestRequest, success_envelope

router = APIRouter(prefix="/v1", tags=["ingest"], dependencies=[Depends(require_api_key)])


@router.post("/runs")
def ingest_run(payload: RunIngestRequest, request: Request):
    data = coordinator_from_request(request).ingest_run(payload)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/steps")
def ingest_step(payload: StepIngestRequest, request: Request):
    data = coordinator_from_request(request).ingest_step(payload)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/batch")
def ingest_batch(payload: BatchIngestRequest, request: Request):
    data = coordinator_from_request(request).ingest_batch(list(payload.events))
    message = "ok" if data["rejected"] == 0 else "partially accepted"
    return success_envelope(data, trace_id_from_request(request), message=message)
