"""Server-side ingestion.

Each run or step event is applied as one transaction against the configured
store. Writes are keyed so redelivery of the same event is harmless:

* runs by run id, steps and their metrics by step id,
* candidates by (step id, candidate type, candidate id),
* outcomes by (step id, candidate type, candidate id, outcome kind).

Creation fields are written once; later deliveries only touch mutable fields.
A run or step that already reached ``success`` or ``error`` refuses any
delivery that would change that status (``TerminalStateConflict``); a repeat
of the same terminal status is applied as an ordinary idempotent update.

Concurrent deliveries for one id serialize in the storage engine: PostgreSQL
row locks (``INSERT ... ON CONFLICT`` followed by ``SELECT ... FOR UPDATE``),
or the store lock for the in-memory backend. No application-level lock is held.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from xray.errors import ApiError, StorageConflict, TerminalStateConflict, ValidationError
from xray.models import TERMINAL_STATUSES
from xray.schemas import BatchEventIn, RunIngestRequest, StepIngestRequest

logger = logging.getLogger(__name__)


def _guard_transition(*, entity: str, entity_id: str, current_status: str, new_status: str) -> None:
    if current_status in TERMINAL_STATUSES and new_status != current_status:
        raise TerminalStateConflict(
            entity=entity,
            entity_id=entity_id,
            current_status=current_status,
            new_status=new_status,
        )


def _present(fields: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in fields.items() if value is not None}


class IngestionCoordinator:
    def __init__(self, store: Any) -> None:
        self._store = store

    def ingest_run(self, req: RunIngestRequest) -> dict[str, Any]:
        repo = self._store.runs_repository
        row = {
            "run_id": req.run_id,
            "trace_id": req.trace_id,
            "pipeline": req.pipeline,
            "pipeline_version": req.pipeline_version,
            "status": req.status,
            "started_at": req.started_at,
            "ended_at": req.ended_at,
            "duration_ms": req.duration_ms,
            "input": req.input,
            "output": req.output,
            "error": req.error,
            "tags": req.tags or {},
            "meta": req.meta or {},
        }

        def _op(conn: Any) -> dict[str, Any]:
            if repo.insert_if_absent(conn, run=row):
                return {"run_id": req.run_id, "created": True, "status": req.status}
            current = repo.get_for_update(conn, run_id=req.run_id)
            if current is None:
                raise StorageConflict(f"run {req.run_id} disappeared during ingest")
            _guard_transition(
                entity="run",
                entity_id=req.run_id,
                current_status=str(current["status"]),
                new_status=req.status,
            )
            changes = {"status": req.status}
            changes.update(
                _present(
                    {
                        "ended_at": req.ended_at,
                        "duration_ms": req.duration_ms,
                        "output": req.output,
                        "error": req.error,
                        "tags": req.tags,
                        "meta": req.meta,
                    }
                )
            )
            repo.update(conn, run_id=req.run_id, changes=changes)
            return {"run_id": req.run_id, "created": False, "status": req.status}

        result = self._store.tx_runner.run_in_tx(fn=_op)
        logger.debug("ingested run %s status=%s created=%s", req.run_id, req.status, result["created"])
        return result

    def ingest_step(self, req: StepIngestRequest) -> dict[str, Any]:
        steps = self._store.steps_repository
        candidates = self._store.candidates_repository
        row = {
            "step_id": req.step_id,
            "run_id": req.run_id,
            "parent_step_id": req.parent_step_id,
            "name": req.name,
            "type": req.type,
            "status": req.status,
            "started_at": req.started_at,
            "ended_at": req.ended_at,
            "duration_ms": req.duration_ms,
            "input": req.input,
            "output": req.output,
            "reasoning": req.reasoning,
            "meta": req.meta or {},
            "capture_policy": req.capture_policy or {},
        }
        metrics = {
            "step_id": req.step_id,
            **req.metrics.model_dump(),
            "rejection_histogram": dict(req.rejection_histogram),
        }
        candidate_rows = [c.model_dump() for c in req.candidates]
        outcome_rows = [o.model_dump() for o in req.outcomes]

        def _op(conn: Any) -> dict[str, Any]:
            created = steps.insert_if_absent(conn, step=row)
            if not created:
                current = steps.get_for_update(conn, step_id=req.step_id)
                if current is None:
                    raise StorageConflict(f"step {req.step_id} disappeared during ingest")
                _guard_transition(
                    entity="step",
                    entity_id=req.step_id,
                    current_status=str(current["status"]),
                    new_status=req.status,
                )
                changes = {"status": req.status}
                changes.update(
                    _present(
                        {
                            "ended_at": req.ended_at,
                            "duration_ms": req.duration_ms,
                            "input": req.input,
                            "output": req.output,
                            "reasoning": req.reasoning,
                            "meta": req.meta,
                            "capture_policy": req.capture_policy,
                        }
                    )
                )
                steps.update(conn, step_id=req.step_id, changes=changes)
            steps.upsert_metrics(conn, metrics=metrics)
            candidates.upsert_candidates(conn, step_id=req.step_id, candidates=candidate_rows)
            candidates.upsert_outcomes(conn, step_id=req.step_id, outcomes=outcome_rows)
            return {
                "step_id": req.step_id,
                "created": created,
                "status": req.status,
                "candidates": len(candidate_rows),
                "outcomes": len(outcome_rows),
            }

        result = self._store.tx_runner.run_in_tx(fn=_op)
        logger.debug(
            "ingested step %s status=%s created=%s candidates=%d outcomes=%d",
            req.step_id,
            req.status,
            result["created"],
            result["candidates"],
            result["outcomes"],
        )
        return result

    def ingest_event(self, event: BatchEventIn) -> dict[str, Any]:
        try:
            if event.kind == "run":
                return self.ingest_run(RunIngestRequest.model_validate(event.body))
            return self.ingest_step(StepIngestRequest.model_validate(event.body))
        except PydanticValidationError as exc:
            raise ValidationError(
                f"invalid {event.kind} event",
                details=exc.errors(include_url=False, include_context=False, include_input=False),
            ) from exc

    def ingest_batch(self, events: list[BatchEventIn]) -> dict[str, Any]:
        """Apply each event in its own transaction; one refusal does not undo the others."""
        results: list[dict[str, Any]] = []
        accepted = 0
        for index, event in enumerate(events):
            try:
                data = self.ingest_event(event)
            except ApiError as exc:
                logger.warning("rejected %s event #%d: %s %s", event.kind, index, exc.code, exc.message)
                results.append(
                    {
                        "index": index,
                        "ok": False,
                        "error": {"code": exc.code, "message": exc.message, "retryable": exc.retryable},
                    }
                )
                continue
            accepted += 1
            results.append({"index": index, "ok": True, **data})
        return {"accepted": accepted, "rejected": len(events) - accepted, "results": results}
