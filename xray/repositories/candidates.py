from __future__ import annotations

import json
import re
import threading
from typing import Any

from xray.db.postgres import PostgresTxRunner

CandidateKey = tuple[str, str, str]
OutcomeKey = tuple[str, str, str, str]

CANDIDATE_COLUMNS: tuple[str, ...] = ("step_id", "candidate_type", "candidate_id", "rank", "score", "payload", "meta")
OUTCOME_COLUMNS: tuple[str, ...] = (
    "step_id",
    "candidate_type",
    "candidate_id",
    "outcome",
    "reason_code",
    "reason_detail",
    "reasoning_text",
)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _jsonb(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=True, sort_keys=True)


def _merge_present(existing: dict[str, Any], incoming: dict[str, Any], fields: tuple[str, ...]) -> dict[str, Any]:
    merged = dict(existing)
    for field in fields:
        value = incoming.get(field)
        if value is not None:
            merged[field] = value
    return merged


class InMemoryCandidatesRepository:
    """Candidate and outcome rows keyed by their composite identities."""

    def __init__(
        self,
        candidates: dict[CandidateKey, dict[str, Any]],
        outcomes: dict[OutcomeKey, dict[str, Any]],
        *,
        lock: threading.RLock | None = None,
    ) -> None:
        self._candidates = candidates
        self._outcomes = outcomes
        self._lock = lock or threading.RLock()

    def upsert_candidates(self, conn: Any, *, step_id: str, candidates: list[dict[str, Any]]) -> int:
        for item in candidates:
            key = (step_id, str(item["candidate_type"]), str(item["candidate_id"]))
            conn.remember(self._candidates, key)
            existing = self._candidates.get(key)
            if existing is None:
                row = {col: item.get(col) for col in CANDIDATE_COLUMNS}
                row["step_id"] = step_id
                row["meta"] = row.get("meta") or {}
                self._candidates[key] = row
            else:
                self._candidates[key] = _merge_present(existing, item, ("rank", "score", "payload", "meta"))
        return len(candidates)

    def upsert_outcomes(self, conn: Any, *, step_id: str, outcomes: list[dict[str, Any]]) -> int:
        for item in outcomes:
            key = (step_id, str(item["candidate_type"]), str(item["candidate_id"]), str(item["outcome"]))
            conn.remember(self._outcomes, key)
            existing = self._outcomes.get(key)
            if existing is None:
                row = {col: item.get(col) for col in OUTCOME_COLUMNS}
                row["step_id"] = step_id
                self._outcomes[key] = row
            else:
                self._outcomes[key] = _merge_present(
                    existing, item, ("reason_code", "reason_detail", "reasoning_text")
                )
        return len(outcomes)

    def list_candidates(self, *, step_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = [dict(row) for key, row in self._candidates.items() if key[0] == step_id]
        rows.sort(key=lambda r: (r.get("rank") is None, r.get("rank") or 0))
        return rows

    def list_outcomes(self, *, step_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(row) for key, row in self._outcomes.items() if key[0] == step_id]


class PostgresCandidatesRepository:
    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        candidates_table: str = "step_candidates",
        outcomes_table: str = "candidate_outcomes",
    ) -> None:
        self._tx_runner = tx_runner
        self._candidates_table = _validate_identifier(candidates_table)
        self._outcomes_table = _validate_identifier(outcomes_table)

    def upsert_candidates(self, conn: Any, *, step_id: str, candidates: list[dict[str, Any]]) -> int:
        if not candidates:
            return 0
        t = self._candidates_table
        sql = f"""
            INSERT INTO {t} ({", ".join(CANDIDATE_COLUMNS)})
            VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s::jsonb)
            ON CONFLICT (step_id, candidate_type, candidate_id) DO UPDATE
            SET rank = COALESCE(EXCLUDED.rank, {t}.rank),
                score = COALESCE(EXCLUDED.score, {t}.score),
                payload = COALESCE(EXCLUDED.payload, {t}.payload),
                meta = COALESCE(EXCLUDED.meta, {t}.meta)
        """
        params = [
            (
                step_id,
                str(item["candidate_type"]),
                str(item["candidate_id"]),
                item.get("rank"),
                item.get("score"),
                _jsonb(item.get("payload")),
                _jsonb(item.get("meta") or {}),
            )
            for item in candidates
        ]
        with conn.cursor() as cur:
            cur.executemany(sql, params)
        return len(params)

    def upsert_outcomes(self, conn: Any, *, step_id: str, outcomes: list[dict[str, Any]]) -> int:
        if not outcomes:
            return 0
        t = self._outcomes_table
        sql = f"""
            INSERT INTO {t} ({", ".join(OUTCOME_COLUMNS)})
            VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s)
            ON CONFLICT (step_id, candidate_type, candidate_id, outcome) DO UPDATE
            SET reason_code = COALESCE(EXCLUDED.reason_code, {t}.reason_code),
                reason_detail = COALESCE(EXCLUDED.reason_detail, {t}.reason_detail),
                reasoning_text = COALESCE(EXCLUDED.reasoning_text, {t}.reasoning_text)
        """
        params = [
            (
                step_id,
                str(item["candidate_type"]),
                str(item["candidate_id"]),
                str(item["outcome"]),
                item.get("reason_code"),
                _jsonb(item.get("reason_detail")),
                item.get("reasoning_text"),
            )
            for item in outcomes
        ]
        with conn.cursor() as cur:
            cur.executemany(sql, params)
        return len(params)

    def list_candidates(self, *, step_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT {", ".join(CANDIDATE_COLUMNS)}
            FROM {self._candidates_table}
            WHERE step_id = %s
            ORDER BY rank ASC NULLS LAST
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (step_id,))
                rows = cur.fetchall()
            return [dict(zip(CANDIDATE_COLUMNS, row)) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def list_outcomes(self, *, step_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT {", ".join(OUTCOME_COLUMNS)}
            FROM {self._outcomes_table}
            WHERE step_id = %s
            ORDER BY created_at ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (step_id,))
                rows = cur.fetchall()
            return [dict(zip(OUTCOME_COLUMNS, row)) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)
