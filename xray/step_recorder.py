"""Per-step accumulator.

A ``StepRecorder`` is owned by the code that opened the step. It collects
candidates and outcomes while the step runs and converts them into a single
immutable step event on ``finalize``. The transition out of ``running`` happens
exactly once; a second finalize raises instead of re-emitting or silently
ignoring the call, either of which would change the reported metrics.
"""

from __future__ import annotations

import copy
import random
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Any, Protocol

from xray import capture_policy
from xray.errors import StepAlreadyFinalized
from xray.models import (
    OUTCOME_KINDS,
    TERMINAL_STATUSES,
    Candidate,
    CapturePolicy,
    Outcome,
    OutboundEvent,
    StepMetrics,
    isoformat,
    normalize_error,
    utcnow,
)


class EventSink(Protocol):
    def enqueue(self, event: OutboundEvent) -> None: ...


def _as_candidate(raw: Candidate | Mapping[str, Any]) -> Candidate:
    if isinstance(raw, Candidate):
        return raw
    return Candidate(
        candidate_id=str(raw.get("candidateId", raw.get("candidate_id"))),
        candidate_type=str(raw.get("candidateType", raw.get("candidate_type"))),
        rank=raw.get("rank"),
        score=raw.get("score"),
        payload=raw.get("payload"),
        meta=raw.get("meta"),
    )


class StepRecorder:
    def __init__(
        self,
        *,
        sink: EventSink,
        step_id: str,
        run_id: str,
        name: str,
        step_type: str,
        input: Any = None,
        meta: Mapping[str, Any] | None = None,
        capture_policy: CapturePolicy | Mapping[str, Any] | None = None,
        parent_step_id: str | None = None,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self._sink = sink
        self.step_id = step_id
        self.run_id = run_id
        self.name = name
        self.step_type = step_type
        self.parent_step_id = parent_step_id
        self.policy = (
            capture_policy if isinstance(capture_policy, CapturePolicy) else CapturePolicy.from_dict(capture_policy)
        )
        self._clock = clock
        self._rng = rng
        self._input = copy.deepcopy(input)
        self._meta = dict(meta or {})
        self.started_at = clock()
        self.ended_at: datetime | None = None
        self.status = "running"
        self._candidates: list[Candidate] = []
        self._outcomes: list[Outcome] = []
        self._reasoning: Any = None
        self._output: Any = None

    def __enter__(self) -> "StepRecorder":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self.status == "running":
            if exc is not None:
                self.end_error(exc)
            else:
                self.end_success()
        return False

    @property
    def candidate_count(self) -> int:
        return len(self._candidates)

    @property
    def outcome_count(self) -> int:
        return len(self._outcomes)

    def _base_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "stepId": self.step_id,
            "runId": self.run_id,
            "name": self.name,
            "type": self.step_type,
            "startedAt": isoformat(self.started_at),
            "input": self._input,
            "meta": dict(self._meta),
            "capturePolicy": self.policy.to_wire(),
        }
        if self.parent_step_id:
            body["parentStepId"] = self.parent_step_id
        return body

    def emit_running(self) -> OutboundEvent:
        """Announce the step as running so partially finished runs are visible."""
        body = self._base_body()
        body["status"] = "running"
        body["metrics"] = StepMetrics().to_wire()
        event = OutboundEvent(kind="step", body=copy.deepcopy(body))
        self._sink.enqueue(event)
        return event

    def add_candidates(self, batch: Iterable[Candidate | Mapping[str, Any]]) -> None:
        self._candidates.extend(_as_candidate(c) for c in batch)

    def record_outcome(
        self,
        kind: str,
        candidate_id: str,
        candidate_type: str,
        reason_code: str | None = None,
        reason_detail: Any = None,
        reasoning_text: str | None = None,
    ) -> None:
        if kind not in OUTCOME_KINDS:
            raise ValueError(f"unsupported outcome kind: {kind}")
        self._outcomes.append(
            Outcome(
                candidate_id=candidate_id,
                candidate_type=candidate_type,
                outcome=kind,  # type: ignore[arg-type]
                reason_code=reason_code,
                reason_detail=reason_detail,
                reasoning_text=reasoning_text,
            )
        )

    def accept(self, candidate_id: str, candidate_type: str, reason_code: str | None = None, **kwargs: Any) -> None:
        self.record_outcome("accepted", candidate_id, candidate_type, reason_code, **kwargs)

    def reject(self, candidate_id: str, candidate_type: str, reason_code: str | None = None, **kwargs: Any) -> None:
        self.record_outcome("rejected", candidate_id, candidate_type, reason_code, **kwargs)

    def select(self, candidate_id: str, candidate_type: str, reason_code: str | None = None, **kwargs: Any) -> None:
        self.record_outcome("selected", candidate_id, candidate_type, reason_code, **kwargs)

    def set_reasoning(self, reasoning: Any) -> None:
        self._reasoning = reasoning

    def set_output(self, output: Any) -> None:
        self._output = output

    def finalize(self, status: str, error: BaseException | Any = None) -> OutboundEvent:
        if self.status != "running":
            raise StepAlreadyFinalized(self.step_id, self.status)
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"finalize requires a terminal status, got {status!r}")
        self.status = status
        self.ended_at = self._clock()

        reasoning = self._reasoning
        if error is not None:
            merged = dict(reasoning) if isinstance(reasoning, Mapping) else {}
            if reasoning is not None and not isinstance(reasoning, Mapping):
                merged["value"] = reasoning
            merged["error"] = normalize_error(error)
            reasoning = merged

        result = capture_policy.reduce(self._candidates, self._outcomes, self.policy, rng=self._rng)
        metrics = StepMetrics.compute(
            candidates_in=len(self._candidates),
            candidates_captured=len(result.captured_candidates),
            outcomes=self._outcomes,
        )
        duration_ms = int((self.ended_at - self.started_at).total_seconds() * 1000)

        body = self._base_body()
        body.update(
            {
                "status": status,
                "endedAt": isoformat(self.ended_at),
                "durationMs": max(0, duration_ms),
                "output": self._output,
                "reasoning": reasoning,
                "metrics": metrics.to_wire(),
                "candidates": [c.to_wire() for c in result.captured_candidates],
                "outcomes": [o.to_wire() for o in result.captured_outcomes],
                "rejectionHistogram": dict(result.histogram),
            }
        )
        event = OutboundEvent(kind="step", body=copy.deepcopy(body))
        self._sink.enqueue(event)
        return event

    def end_success(self) -> OutboundEvent:
        return self.finalize("success")

    def end_error(self, error: BaseException | Any) -> OutboundEvent:
        return self.finalize("error", error if error is not None else {"message": "Unknown error"})
