from __future__ import annotations

import json
import re
import threading
from typing import Any

from xray.db.postgres import PostgresTxRunner

RUN_COLUMNS: tuple[str, ...] = (
    "run_id",
    "trace_id",
    "pipeline",
    "pipeline_version",
    "status",
    "started_at",
    "ended_at",
    "duration_ms",
    "input",
    "output",
    "error",
    "tags",
    "meta",
)
RUN_JSON_COLUMNS = frozenset({"input", "output", "error", "tags", "meta"})
# Creation fields (trace id, pipeline, start time) are never rewritten.
RUN_MUTABLE_COLUMNS = frozenset({"status", "ended_at", "duration_ms", "output", "error", "tags", "meta"})


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _jsonb(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=True, sort_keys=True)


def _check_mutable(changes: dict[str, Any]) -> None:
    unknown = set(changes) - RUN_MUTABLE_COLUMNS
    if unknown:
        raise ValueError(f"immutable or unknown run columns: {sorted(unknown)}")


class InMemoryRunsRepository:
    def __init__(self, runs: dict[str, dict[str, Any]], *, lock: threading.RLock | None = None) -> None:
        self._runs = runs
        self._lock = lock or threading.RLock()

    def insert_if_absent(self, conn: Any, *, run: dict[str, Any]) -> bool:
        run_id = str(run["run_id"])
        if run_id in self._runs:
            return False
        conn.remember(self._runs, run_id)
        self._runs[run_id] = {col: run.get(col) for col in RUN_COLUMNS}
        return True

    def get_for_update(self, conn: Any, *, run_id: str) -> dict[str, Any] | None:
        row = self._runs.get(run_id)
        return dict(row) if row is not None else None

    def update(self, conn: Any, *, run_id: str, changes: dict[str, Any]) -> None:
        _check_mutable(changes)
        if not changes or run_id not in self._runs:
            return
        conn.remember(self._runs, run_id)
        self._runs[run_id].update(changes)

    def get(self, *, run_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._runs.get(run_id)
            return dict(row) if row is not None else None

    def list_runs(self, *, pipeline: str | None, trace_id: str | None, limit: int) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                dict(row)
                for row in self._runs.values()
                if (pipeline is None or row.get("pipeline") == pipeline)
                and (trace_id is None or row.get("trace_id") == trace_id)
            ]
        rows.sort(key=lambda r: r["started_at"], reverse=True)
        return rows[:limit]


class PostgresRunsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "runs") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _row_to_run(row: tuple[Any, ...]) -> dict[str, Any]:
        data = dict(zip(RUN_COLUMNS, row))
        data["tags"] = data.get("tags") if isinstance(data.get("tags"), dict) else {}
        data["meta"] = data.get("meta") if isinstance(data.get("meta"), dict) else {}
        return data

    def insert_if_absent(self, conn: Any, *, run: dict[str, Any]) -> bool:
        placeholders = ", ".join("%s::jsonb" if col in RUN_JSON_COLUMNS else "%s" for col in RUN_COLUMNS)
        sql = f"""
            INSERT INTO {self._table_name} ({", ".join(RUN_COLUMNS)})
            VALUES ({placeholders})
            ON CONFLICT (run_id) DO NOTHING
        """
        params = tuple(_jsonb(run.get(col)) if col in RUN_JSON_COLUMNS else run.get(col) for col in RUN_COLUMNS)
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.rowcount == 1

    def get_for_update(self, conn: Any, *, run_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {", ".join(RUN_COLUMNS)}
            FROM {self._table_name}
            WHERE run_id = %s
            FOR UPDATE
        """
        with conn.cursor() as cur:
            cur.execute(sql, (run_id,))
            row = cur.fetchone()
        if row is None:
            return None
        return self._row_to_run(row)

    def update(self, conn: Any, *, run_id: str, changes: dict[str, Any]) -> None:
        _check_mutable(changes)
        if not changes:
            return
        columns = sorted(changes)
        assignments = ", ".join(f"{col} = %s::jsonb" if col in RUN_JSON_COLUMNS else f"{col} = %s" for col in columns)
        params = [_jsonb(changes[col]) if col in RUN_JSON_COLUMNS else changes[col] for col in columns]
        sql = f"UPDATE {self._table_name} SET {assignments} WHERE run_id = %s"
        with conn.cursor() as cur:
            cur.execute(sql, (*params, run_id))

    def get(self, *, run_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {", ".join(RUN_COLUMNS)}
            FROM {self._table_name}
            WHERE run_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (run_id,))
                row = cur.fetchone()
            if row is None:
                return None
            return self._row_to_run(row)

        return self._tx_runner.run_in_tx(fn=_op)

    def list_runs(self, *, pipeline: str | None, trace_id: str | None, limit: int) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if pipeline is not None:
            clauses.append("pipeline = %s")
            params.append(pipeline)
        if trace_id is not None:
            clauses.append("trace_id = %s")
            params.append(trace_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"""
            SELECT {", ".join(RUN_COLUMNS)}
            FROM {self._table_name}
            {where}
            ORDER BY started_at DESC
            LIMIT %s
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (*params, int(limit)))
                rows = cur.fetchall()
            return [self._row_to_run(row) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)
