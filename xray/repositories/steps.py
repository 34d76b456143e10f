from __future__ import annotations

import json
import re
import threading
from typing import Any

from xray.db.postgres import PostgresTxRunner

STEP_COLUMNS: tuple[str, ...] = (
    "step_id",
    "run_id",
    "parent_step_id",
    "name",
    "type",
    "status",
    "started_at",
    "ended_at",
    "duration_ms",
    "input",
    "output",
    "reasoning",
    "meta",
    "capture_policy",
)
STEP_JSON_COLUMNS = frozenset({"input", "output", "reasoning", "meta", "capture_policy"})
# Run linkage, name, type and start time are fixed by the first delivery.
STEP_MUTABLE_COLUMNS = frozenset(
    {"status", "ended_at", "duration_ms", "input", "output", "reasoning", "meta", "capture_policy"}
)
METRIC_COLUMNS: tuple[str, ...] = (
    "step_id",
    "candidates_in",
    "candidates_captured",
    "accepted_count",
    "rejected_count",
    "selected_count",
    "rejection_rate",
    "rejection_histogram",
)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _jsonb(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=True, sort_keys=True)


def _check_mutable(changes: dict[str, Any]) -> None:
    unknown = set(changes) - STEP_MUTABLE_COLUMNS
    if unknown:
        raise ValueError(f"immutable or unknown step columns: {sorted(unknown)}")


class InMemoryStepsRepository:
    def __init__(
        self,
        steps: dict[str, dict[str, Any]],
        metrics: dict[str, dict[str, Any]],
        *,
        lock: threading.RLock | None = None,
    ) -> None:
        self._steps = steps
        self._metrics = metrics
        self._lock = lock or threading.RLock()

    def insert_if_absent(self, conn: Any, *, step: dict[str, Any]) -> bool:
        step_id = str(step["step_id"])
        if step_id in self._steps:
            return False
        conn.remember(self._steps, step_id)
        self._steps[step_id] = {col: step.get(col) for col in STEP_COLUMNS}
        return True

    def get_for_update(self, conn: Any, *, step_id: str) -> dict[str, Any] | None:
        row = self._steps.get(step_id)
        return dict(row) if row is not None else None

    def update(self, conn: Any, *, step_id: str, changes: dict[str, Any]) -> None:
        _check_mutable(changes)
        if not changes or step_id not in self._steps:
            return
        conn.remember(self._steps, step_id)
        self._steps[step_id].update(changes)

    def upsert_metrics(self, conn: Any, *, metrics: dict[str, Any]) -> None:
        step_id = str(metrics["step_id"])
        conn.remember(self._metrics, step_id)
        self._metrics[step_id] = {col: metrics.get(col) for col in METRIC_COLUMNS}

    def _with_metrics(self, row: dict[str, Any]) -> dict[str, Any]:
        data = dict(row)
        metrics = self._metrics.get(row["step_id"])
        data["metrics"] = dict(metrics) if metrics is not None else None
        return data

    def get(self, *, step_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._steps.get(step_id)
            if row is None:
                return None
            return self._with_metrics(row)

    def list_for_run(self, *, run_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = [self._with_metrics(row) for row in self._steps.values() if row.get("run_id") == run_id]
        rows.sort(key=lambda r: r["started_at"])
        return rows

    def query_steps(
        self,
        *,
        step_type: str | None,
        name: str | None,
        min_rejection_rate: float,
        limit: int,
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = []
            for row in self._steps.values():
                if step_type is not None and row.get("type") != step_type:
                    continue
                if name is not None and row.get("name") != name:
                    continue
                metrics = self._metrics.get(row["step_id"])
                if metrics is None or float(metrics.get("rejection_rate") or 0.0) < min_rejection_rate:
                    continue
                rows.append(self._with_metrics(row))
        rows.sort(key=lambda r: r["started_at"], reverse=True)
        return rows[:limit]


class PostgresStepsRepository:
    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        table_name: str = "steps",
        metrics_table: str = "step_metrics",
    ) -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)
        self._metrics_table = _validate_identifier(metrics_table)

    @staticmethod
    def _row_to_step(row: tuple[Any, ...]) -> dict[str, Any]:
        data = dict(zip(STEP_COLUMNS, row[: len(STEP_COLUMNS)]))
        data["meta"] = data.get("meta") if isinstance(data.get("meta"), dict) else {}
        data["capture_policy"] = data.get("capture_policy") if isinstance(data.get("capture_policy"), dict) else {}
        metric_values = row[len(STEP_COLUMNS) :]
        if metric_values and metric_values[0] is not None:
            metrics = dict(zip(METRIC_COLUMNS, metric_values))
            if not isinstance(metrics.get("rejection_histogram"), dict):
                metrics["rejection_histogram"] = {}
            data["metrics"] = metrics
        elif metric_values:
            data["metrics"] = None
        return data

    def _select_with_metrics(self) -> str:
        step_cols = ", ".join(f"s.{col}" for col in STEP_COLUMNS)
        metric_cols = ", ".join(f"m.{col}" for col in METRIC_COLUMNS)
        return f"""
            SELECT {step_cols}, {metric_cols}
            FROM {self._table_name} s
            LEFT JOIN {self._metrics_table} m ON m.step_id = s.step_id
        """

    def insert_if_absent(self, conn: Any, *, step: dict[str, Any]) -> bool:
        placeholders = ", ".join("%s::jsonb" if col in STEP_JSON_COLUMNS else "%s" for col in STEP_COLUMNS)
        sql = f"""
            INSERT INTO {self._table_name} ({", ".join(STEP_COLUMNS)})
            VALUES ({placeholders})
            ON CONFLICT (step_id) DO NOTHING
        """
        params = tuple(_jsonb(step.get(col)) if col in STEP_JSON_COLUMNS else step.get(col) for col in STEP_COLUMNS)
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.rowcount == 1

    def get_for_update(self, conn: Any, *, step_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {", ".join(STEP_COLUMNS)}
            FROM {self._table_name}
            WHERE step_id = %s
            FOR UPDATE
        """
        with conn.cursor() as cur:
            cur.execute(sql, (step_id,))
            row = cur.fetchone()
        if row is None:
            return None
        return self._row_to_step(row)

    def update(self, conn: Any, *, step_id: str, changes: dict[str, Any]) -> None:
        _check_mutable(changes)
        if not changes:
            return
        columns = sorted(changes)
        assignments = ", ".join(f"{col} = %s::jsonb" if col in STEP_JSON_COLUMNS else f"{col} = %s" for col in columns)
        params = [_jsonb(changes[col]) if col in STEP_JSON_COLUMNS else changes[col] for col in columns]
        sql = f"UPDATE {self._table_name} SET {assignments} WHERE step_id = %s"
        with conn.cursor() as cur:
            cur.execute(sql, (*params, step_id))

    def upsert_metrics(self, conn: Any, *, metrics: dict[str, Any]) -> None:
        sql = f"""
            INSERT INTO {self._metrics_table} ({", ".join(METRIC_COLUMNS)})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb)
            ON CONFLICT (step_id) DO UPDATE
            SET candidates_in = EXCLUDED.candidates_in,
                candidates_captured = EXCLUDED.candidates_captured,
                accepted_count = EXCLUDED.accepted_count,
                rejected_count = EXCLUDED.rejected_count,
                selected_count = EXCLUDED.selected_count,
                rejection_rate = EXCLUDED.rejection_rate,
                rejection_histogram = EXCLUDED.rejection_histogram
        """
        with conn.cursor() as cur:
            cur.execute(
                sql,
                (
                    metrics["step_id"],
                    int(metrics.get("candidates_in", 0)),
                    int(metrics.get("candidates_captured", 0)),
                    int(metrics.get("accepted_count", 0)),
                    int(metrics.get("rejected_count", 0)),
                    int(metrics.get("selected_count", 0)),
                    float(metrics.get("rejection_rate", 0.0)),
                    _jsonb(metrics.get("rejection_histogram") or {}),
                ),
            )

    def get(self, *, step_id: str) -> dict[str, Any] | None:
        sql = self._select_with_metrics() + " WHERE s.step_id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (step_id,))
                row = cur.fetchone()
            if row is None:
                return None
            return self._row_to_step(row)

        return self._tx_runner.run_in_tx(fn=_op)

    def list_for_run(self, *, run_id: str) -> list[dict[str, Any]]:
        sql = self._select_with_metrics() + " WHERE s.run_id = %s ORDER BY s.started_at ASC"

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (run_id,))
                rows = cur.fetchall()
            return [self._row_to_step(row) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def query_steps(
        self,
        *,
        step_type: str | None,
        name: str | None,
        min_rejection_rate: float,
        limit: int,
    ) -> list[dict[str, Any]]:
        clauses = ["m.rejection_rate >= %s"]
        params: list[Any] = [float(min_rejection_rate)]
        if step_type is not None:
            clauses.append("s.type = %s")
            params.append(step_type)
        if name is not None:
            clauses.append("s.name = %s")
            params.append(name)
        sql = (
            self._select_with_metrics()
            + f" WHERE {' AND '.join(clauses)} ORDER BY s.started_at DESC LIMIT %s"
        )

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (*params, int(limit)))
                rows = cur.fetchall()
            return [self._row_to_step(row) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)
