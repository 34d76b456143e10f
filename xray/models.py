from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

RunStatus = Literal["running", "success", "error"]
StepStatus = Literal["running", "success", "error"]
OutcomeKind = Literal["accepted", "rejected", "selected"]
CaptureMode = Literal["FULL", "TOP_K", "SAMPLE", "SUMMARY_ONLY", "THRESHOLD"]

TERMINAL_STATUSES = frozenset({"success", "error"})
OUTCOME_KINDS = frozenset({"accepted", "rejected", "selected"})
CAPTURE_MODES = frozenset({"FULL", "TOP_K", "SAMPLE", "SUMMARY_ONLY", "THRESHOLD"})

DEFAULT_TOP_K = 50
DEFAULT_SAMPLE_N = 50
DEFAULT_THRESHOLD = 200

# Largest batch the ingestion service accepts in one POST /v1/batch.
MAX_BATCH_EVENTS = 500


def utcnow() -> datetime:
    return datetime.now(UTC)


def isoformat(dt: datetime) -> str:
    return dt.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return default


def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    return default


def _pick(raw: Mapping[str, Any], camel: str, snake: str) -> Any:
    if camel in raw:
        return raw[camel]
    return raw.get(snake)


@dataclass(frozen=True)
class Candidate:
    candidate_id: str
    candidate_type: str
    rank: int | None = None
    score: float | None = None
    payload: Any = None
    meta: dict[str, Any] | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.candidate_type, self.candidate_id)

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "candidateId": self.candidate_id,
            "candidateType": self.candidate_type,
        }
        if self.rank is not None:
            data["rank"] = self.rank
        if self.score is not None:
            data["score"] = self.score
        if self.payload is not None:
            data["payload"] = self.payload
        if self.meta is not None:
            data["meta"] = dict(self.meta)
        return data


@dataclass(frozen=True)
class Outcome:
    candidate_id: str
    candidate_type: str
    outcome: OutcomeKind
    reason_code: str | None = None
    reason_detail: Any = None
    reasoning_text: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.candidate_type, self.candidate_id)

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "candidateId": self.candidate_id,
            "candidateType": self.candidate_type,
            "outcome": self.outcome,
        }
        if self.reason_code is not None:
            data["reasonCode"] = self.reason_code
        if self.reason_detail is not None:
            data["reasonDetail"] = self.reason_detail
        if self.reasoning_text is not None:
            data["reasoningText"] = self.reasoning_text
        return data


@dataclass(frozen=True)
class CapturePolicy:
    mode: CaptureMode = "THRESHOLD"
    top_k: int = DEFAULT_TOP_K
    sample_n: int = DEFAULT_SAMPLE_N
    threshold: int = DEFAULT_THRESHOLD
    include_outcomes: bool = True
    include_rejected: bool = True

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> "CapturePolicy":
        """Build a policy from a partial camelCase or snake_case mapping.

        Unknown modes and malformed numbers fall back to the defaults rather
        than raising, so a bad policy never breaks the instrumented pipeline.
        """
        if not raw:
            return cls()
        mode = str(raw.get("mode") or "THRESHOLD").strip().upper()
        if mode not in CAPTURE_MODES:
            mode = "THRESHOLD"
        return cls(
            mode=mode,  # type: ignore[arg-type]
            top_k=_as_int(_pick(raw, "topK", "top_k"), DEFAULT_TOP_K),
            sample_n=_as_int(_pick(raw, "sampleN", "sample_n"), DEFAULT_SAMPLE_N),
            threshold=_as_int(raw.get("threshold"), DEFAULT_THRESHOLD),
            include_outcomes=_as_bool(_pick(raw, "includeOutcomes", "include_outcomes"), True),
            include_rejected=_as_bool(_pick(raw, "includeRejected", "include_rejected"), True),
        )

    def to_wire(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "topK": self.top_k,
            "sampleN": self.sample_n,
            "threshold": self.threshold,
            "includeOutcomes": self.include_outcomes,
            "includeRejected": self.include_rejected,
        }


@dataclass(frozen=True)
class StepMetrics:
    candidates_in: int = 0
    candidates_captured: int = 0
    accepted_count: int = 0
    rejected_count: int = 0
    selected_count: int = 0
    rejection_rate: float = 0.0

    @classmethod
    def compute(cls, *, candidates_in: int, candidates_captured: int, outcomes: list[Outcome]) -> "StepMetrics":
        accepted = sum(1 for o in outcomes if o.outcome == "accepted")
        rejected = sum(1 for o in outcomes if o.outcome == "rejected")
        selected = sum(1 for o in outcomes if o.outcome == "selected")
        return cls(
            candidates_in=candidates_in,
            candidates_captured=candidates_captured,
            accepted_count=accepted,
            rejected_count=rejected,
            selected_count=selected,
            rejection_rate=(rejected / candidates_in) if candidates_in > 0 else 0.0,
        )

    def to_wire(self) -> dict[str, Any]:
        return {
            "candidatesIn": self.candidates_in,
            "candidatesCaptured": self.candidates_captured,
            "acceptedCount": self.accepted_count,
            "rejectedCount": self.rejected_count,
            "selectedCount": self.selected_count,
            "rejectionRate": self.rejection_rate,
        }


@dataclass(frozen=True)
class OutboundEvent:
    """One queued delivery: a run or step body in wire format."""

    kind: Literal["run", "step"]
    body: dict[str, Any] = field(default_factory=dict)

    @property
    def path(self) -> str:
        return "/v1/runs" if self.kind == "run" else "/v1/steps"

    def to_wire(self) -> dict[str, Any]:
        return {"kind": self.kind, "body": self.body}


def normalize_error(exc: BaseException | Any) -> dict[str, Any]:
    if exc is None:
        return {"message": "Unknown error"}
    if isinstance(exc, BaseException):
        data: dict[str, Any] = {"message": str(exc) or exc.__class__.__name__, "type": exc.__class__.__name__}
        code = getattr(exc, "code", None)
        if code is not None:
            data["code"] = str(code)
        return data
    if isinstance(exc, Mapping):
        return {"message": str(exc.get("message", "Unknown error")), **{k: v for k, v in exc.items() if k != "message"}}
    return {"message": str(exc)}
