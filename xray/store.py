from __future__ import annotations

import copy
import os
import threading
from collections.abc import Callable, Mapping
from typing import Any

from xray.repositories.candidates import CandidateKey, InMemoryCandidatesRepository, OutcomeKey
from xray.repositories.runs import InMemoryRunsRepository
from xray.repositories.steps import InMemoryStepsRepository


class InMemoryTx:
    """Undo journal for one in-memory transaction.

    Repositories call ``remember`` before touching a key; ``rollback`` replays
    the journal backwards so a failed ingest leaves no partial rows behind.
    """

    def __init__(self) -> None:
        self._undo: list[tuple[dict[Any, Any], Any, bool, Any]] = []

    def remember(self, table: dict[Any, Any], key: Any) -> None:
        if key in table:
            self._undo.append((table, key, True, copy.deepcopy(table[key])))
        else:
            self._undo.append((table, key, False, None))

    def rollback(self) -> None:
        for table, key, existed, value in reversed(self._undo):
            if existed:
                table[key] = value
            else:
                table.pop(key, None)
        self._undo.clear()


class InMemoryTxRunner:
    """Serializes transactions on one lock, the in-memory stand-in for row locking."""

    def __init__(self, lock: threading.RLock) -> None:
        self._lock = lock

    def run_in_tx(self, *, fn: Callable[[Any], Any]) -> Any:
        with self._lock:
            tx = InMemoryTx()
            try:
                return fn(tx)
            except BaseException:
                tx.rollback()
                raise


class InMemoryTraceStore:
    backend_name = "memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.tx_runner = InMemoryTxRunner(self._lock)
        self.runs: dict[str, dict[str, Any]] = {}
        self.steps: dict[str, dict[str, Any]] = {}
        self.step_metrics: dict[str, dict[str, Any]] = {}
        self.step_candidates: dict[CandidateKey, dict[str, Any]] = {}
        self.candidate_outcomes: dict[OutcomeKey, dict[str, Any]] = {}
        self._bind_repositories()

    def _bind_repositories(self) -> None:
        self.runs_repository = InMemoryRunsRepository(self.runs, lock=self._lock)
        self.steps_repository = InMemoryStepsRepository(self.steps, self.step_metrics, lock=self._lock)
        self.candidates_repository = InMemoryCandidatesRepository(
            self.step_candidates,
            self.candidate_outcomes,
            lock=self._lock,
        )

    def reset(self) -> None:
        with self._lock:
            self.runs.clear()
            self.steps.clear()
            self.step_metrics.clear()
            self.step_candidates.clear()
            self.candidate_outcomes.clear()

    def counts(self) -> dict[str, int]:
        with self._lock:
            return {
                "runs": len(self.runs),
                "steps": len(self.steps),
                "step_metrics": len(self.step_metrics),
                "step_candidates": len(self.step_candidates),
                "candidate_outcomes": len(self.candidate_outcomes),
            }


def create_store_from_env(environ: Mapping[str, str] | None = None) -> Any:
    env = os.environ if environ is None else environ
    backend = env.get("XRAY_STORE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryTraceStore()
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when XRAY_STORE_BACKEND=postgres")
        from xray.store_backends import PostgresTraceStore

        init_schema = env.get("XRAY_POSTGRES_INIT_SCHEMA", "true").strip().lower() in {"1", "true", "yes", "on"}
        return PostgresTraceStore(dsn=dsn, init_schema=init_schema)
    raise RuntimeError(f"unsupported store backend: {backend}")
