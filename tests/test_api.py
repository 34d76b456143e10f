from __future__ import annotations

import itertools

from fastapi.testclient import TestClient

from xray.config import ClientConfig
from xray.main import create_app
from xray.tracer import Tracer


def _run_body(run_id: str = "run_1", **overrides) -> dict:
    body = {
        "runId": run_id,
        "traceId": "req_1",
        "pipeline": "competitor_discovery",
        "pipelineVersion": "1.0.0",
        "status": "running",
        "startedAt": "2026-01-02T12:00:00Z",
        "input": {"title": "Laptop stand"},
    }
    body.update(overrides)
    return body


def _step_body(step_id: str = "step_1", **overrides) -> dict:
    body = {
        "stepId": step_id,
        "runId": "run_1",
        "name": "filter_candidates",
        "type": "filter",
        "status": "success",
        "startedAt": "2026-01-02T12:00:01Z",
        "metrics": {
            "candidatesIn": 10,
            "candidatesCaptured": 2,
            "acceptedCount": 0,
            "rejectedCount": 10,
            "selectedCount": 0,
            "rejectionRate": 1.0,
        },
        "candidates": [
            {"candidateId": "b", "candidateType": "product", "rank": 2},
            {"candidateId": "a", "candidateType": "product", "rank": 1},
        ],
        "outcomes": [
            {"candidateId": "a", "candidateType": "product", "outcome": "rejected", "reasonCode": "PRICE"},
        ],
        "rejectionHistogram": {"PRICE": 7, "UNKNOWN": 3},
    }
    body.update(overrides)
    return body


def test_health_echoes_trace_id(client):
    resp = client.get("/health", headers={"x-trace-id": "trace_health"})
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["success"] is True
    assert payload["data"]["status"] == "ok"
    assert payload["data"]["store_backend"] == "memory"
    assert payload["meta"]["trace_id"] == "trace_health"
    assert resp.headers["x-trace-id"] == "trace_health"


def test_ingest_and_read_run_with_steps(client):
    assert client.post("/v1/runs", json=_run_body()).status_code == 200
    resp = client.post("/v1/steps", json=_step_body())
    assert resp.status_code == 200
    assert resp.json()["data"]["created"] is True

    run = client.get("/v1/runs/run_1").json()["data"]
    assert run["run"]["pipeline"] == "competitor_discovery"
    assert run["run"]["startedAt"] == "2026-01-02T12:00:00Z"
    assert run["run"]["input"] == {"title": "Laptop stand"}
    assert [s["stepId"] for s in run["steps"]] == ["step_1"]
    assert run["steps"][0]["metrics"]["rejectionHistogram"] == {"PRICE": 7, "UNKNOWN": 3}


def test_step_detail_orders_candidates_by_rank(client):
    client.post("/v1/steps", json=_step_body())
    data = client.get("/v1/steps/step_1").json()["data"]

    assert [c["candidateId"] for c in data["candidates"]] == ["a", "b"]
    assert data["outcomes"] == [
        {
            "candidateId": "a",
            "candidateType": "product",
            "outcome": "rejected",
            "reasonCode": "PRICE",
            "reasonDetail": None,
            "reasoningText": None,
        }
    ]
    assert data["step"]["metrics"]["rejectionRate"] == 1.0


def test_validation_failure_returns_details_and_writes_nothing(client, store):
    bad = _step_body(rejectionHistogram={"PRICE": 1})
    resp = client.post("/v1/steps", json=bad)
    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "REQ_VALIDATION_FAILED"
    assert isinstance(error["details"], list) and error["details"]
    assert store.counts()["steps"] == 0

    resp = client.post("/v1/runs", json={"runId": "r"})
    assert resp.status_code == 400
    locs = {tuple(d["loc"]) for d in resp.json()["error"]["details"]}
    assert ("body", "traceId") in locs


def test_unknown_ids_return_not_found(client):
    run = client.get("/v1/runs/nope")
    assert run.status_code == 404
    assert run.json()["error"]["code"] == "RUN_NOT_FOUND"
    step = client.get("/v1/steps/nope")
    assert step.status_code == 404
    assert step.json()["error"]["code"] == "STEP_NOT_FOUND"
    route = client.get("/v1/unknown")
    assert route.status_code == 404
    assert route.json()["error"]["code"] == "REQ_NOT_FOUND"


def test_terminal_conflict_maps_to_409(client):
    client.post("/v1/runs", json=_run_body(status="success"))
    resp = client.post("/v1/runs", json=_run_body(status="running"))
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "TERMINAL_STATE_CONFLICT"
    assert resp.json()["error"]["retryable"] is False


def test_list_runs_filters_and_orders_newest_first(client):
    client.post("/v1/runs", json=_run_body("old", startedAt="2026-01-01T00:00:00Z"))
    client.post("/v1/runs", json=_run_body("new", startedAt="2026-01-03T00:00:00Z"))
    client.post("/v1/runs", json=_run_body("other", pipeline="other", traceId="req_2"))

    items = client.get("/v1/runs", params={"pipeline": "competitor_discovery"}).json()["data"]["items"]
    assert [r["runId"] for r in items] == ["new", "old"]
    by_trace = client.get("/v1/runs", params={"traceId": "req_2"}).json()["data"]["items"]
    assert [r["runId"] for r in by_trace] == ["other"]
    limited = client.get("/v1/runs", params={"limit": 1}).json()["data"]
    assert limited["total"] == 1
    assert client.get("/v1/runs", params={"limit": 201}).status_code == 400


def test_query_steps_by_rejection_rate(client):
    client.post("/v1/steps", json=_step_body("high"))
    low = _step_body("low")
    low["metrics"] = {**low["metrics"], "rejectedCount": 2, "rejectionRate": 0.2}
    low["rejectionHistogram"] = {"PRICE": 2}
    client.post("/v1/steps", json=low)

    default = client.get("/v1/query/steps").json()["data"]["items"]
    assert [s["stepId"] for s in default] == ["high"]
    loose = client.get("/v1/query/steps", params={"minRejectionRate": 0.1, "type": "filter"}).json()["data"]
    assert {s["stepId"] for s in loose["items"]} == {"high", "low"}
    none = client.get("/v1/query/steps", params={"minRejectionRate": 0.1, "name": "other"}).json()["data"]
    assert none["items"] == []


def test_batch_endpoint_accepts_partial_batches(client):
    resp = client.post(
        "/v1/batch",
        json={
            "events": [
                {"kind": "run", "body": _run_body()},
                {"kind": "step", "body": {"stepId": "x"}},
            ]
        },
    )
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["message"] == "partially accepted"
    assert payload["data"]["accepted"] == 1
    assert payload["data"]["rejected"] == 1

    assert client.post("/v1/batch", json={"events": []}).status_code == 400
    assert client.post("/v1/batch", json={"events": [{"kind": "span", "body": {}}]}).status_code == 400


def test_write_endpoints_require_api_key_when_configured(store):
    client = TestClient(create_app(store, api_key="k3y"))

    denied = client.post("/v1/runs", json=_run_body())
    assert denied.status_code == 401
    assert denied.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert client.post("/v1/runs", json=_run_body(), headers={"x-api-key": "wrong"}).status_code == 401

    ok = client.post("/v1/runs", json=_run_body(), headers={"x-api-key": "k3y"})
    assert ok.status_code == 200
    assert client.get("/v1/runs/run_1").status_code == 200


def test_traced_pipeline_round_trips_through_api(client, clock):
    class ClientTransport:
        def send(self, batch):
            resp = client.post("/v1/batch", json={"events": [e.to_wire() for e in batch]})
            assert resp.status_code == 200, resp.text
            return resp.json()["data"]

    counter = itertools.count(1)
    tracer = Tracer(
        ClientConfig(endpoint="http://unused", auto_flush=False, batch_size=3),
        transport=ClientTransport(),
        clock=clock,
        id_factory=lambda: f"id_{next(counter)}",
    )
    with tracer.start_run(trace_id="req_e2e", pipeline="competitor_discovery") as run:
        with run.step("filter", "filter", capture_policy={"mode": "TOP_K", "topK": 10}) as step:
            step.add_candidates({"candidateId": f"p{i}", "candidateType": "product", "rank": i + 1} for i in range(250))
            for i in range(30):
                step.reject(f"p{i}", "product", "LOW_SCORE")
    stats = tracer.flush()
    assert stats.delivered == 4
    assert stats.failed_rounds == 0

    run_data = client.get(f"/v1/runs/{run.run_id}").json()["data"]
    assert run_data["run"]["status"] == "success"
    step_data = client.get(f"/v1/steps/{step.step_id}").json()["data"]
    assert step_data["step"]["status"] == "success"
    assert step_data["step"]["metrics"]["rejectionHistogram"] == {"LOW_SCORE": 30}
    assert step_data["step"]["metrics"]["rejectionRate"] == 0.12
    assert len(step_data["candidates"]) == 10
    assert len(step_data["outcomes"]) == 10
