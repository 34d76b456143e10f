"""Capture policy engine.

Reduces a step's full candidate/outcome population to the subset worth
persisting. The rejection histogram is always computed over every outcome
before any reduction, so aggregate metrics stay exact whatever the mode.
"""

from __future__ import annotations

import random
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from itertools import islice
from typing import Any, TypeVar

from xray.models import Candidate, CapturePolicy, Outcome

UNKNOWN_REASON = "UNKNOWN"
# Unranked candidates sort after every ranked one.
MISSING_RANK = 10**9

T = TypeVar("T")


@dataclass(frozen=True)
class CaptureResult:
    captured_candidates: list[Candidate] = field(default_factory=list)
    captured_outcomes: list[Outcome] = field(default_factory=list)
    histogram: dict[str, int] = field(default_factory=dict)
    resolved_mode: str = "FULL"


def rejection_histogram(outcomes: Iterable[Outcome]) -> dict[str, int]:
    histogram: dict[str, int] = {}
    for o in outcomes:
        if o.outcome != "rejected":
            continue
        key = o.reason_code if o.reason_code is not None else UNKNOWN_REASON
        histogram[key] = histogram.get(key, 0) + 1
    return histogram


def resolve_mode(policy: CapturePolicy, population: int) -> str:
    if policy.mode == "THRESHOLD":
        return "FULL" if population <= policy.threshold else "TOP_K"
    return policy.mode


def top_k(candidates: Sequence[Candidate], k: int) -> list[Candidate]:
    # sorted() is stable, equal ranks keep insertion order
    ordered = sorted(candidates, key=lambda c: c.rank if c.rank is not None else MISSING_RANK)
    return ordered[: max(1, k)]


def sample(candidates: Sequence[Candidate], k: int, *, rng: random.Random | None = None) -> list[Candidate]:
    n = len(candidates)
    size = min(max(1, k), n)
    if size <= 0:
        return []
    chooser = rng if rng is not None else random
    return chooser.sample(list(candidates), size)


def reservoir_sample(items: Iterable[T], k: int, *, rng: random.Random | None = None) -> list[T]:
    """Uniform sample of ``k`` items from an iterable of unknown length (Algorithm R)."""
    chooser = rng if rng is not None else random
    size = max(1, k)
    it = iter(items)
    reservoir = list(islice(it, size))
    for seen, item in enumerate(it, start=size + 1):
        j = chooser.randrange(seen)
        if j < size:
            reservoir[j] = item
    return reservoir


def _retain_outcomes(
    outcomes: Sequence[Outcome],
    captured: Sequence[Candidate],
    policy: CapturePolicy,
) -> list[Outcome]:
    captured_keys = {c.key for c in captured}
    kept: list[Outcome] = []
    for o in outcomes:
        if o.outcome == "selected":
            kept.append(o)
            continue
        if not policy.include_outcomes:
            continue
        if o.key not in captured_keys:
            continue
        if o.outcome == "rejected" and not policy.include_rejected:
            continue
        kept.append(o)
    return kept


def reduce(
    candidates: Sequence[Candidate],
    outcomes: Sequence[Outcome],
    policy: CapturePolicy | Mapping[str, Any] | None = None,
    *,
    rng: random.Random | None = None,
) -> CaptureResult:
    if not isinstance(policy, CapturePolicy):
        policy = CapturePolicy.from_dict(policy)

    histogram = rejection_histogram(outcomes)
    mode = resolve_mode(policy, len(candidates))

    if mode == "FULL":
        captured = list(candidates)
    elif mode == "TOP_K":
        captured = top_k(candidates, policy.top_k)
    elif mode == "SAMPLE":
        captured = sample(candidates, policy.sample_n, rng=rng)
    else:
        captured = []

    return CaptureResult(
        captured_candidates=captured,
        captured_outcomes=_retain_outcomes(outcomes, captured, policy),
        histogram=histogram,
        resolved_mode=mode,
    )
