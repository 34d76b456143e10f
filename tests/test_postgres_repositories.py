from __future__ import annotations

from datetime import datetime, timezone

import pytest

from xray.db import postgres as postgres_module
from xray.db.postgres import PostgresTxRunner
from xray.db.schema import POSTGRES_DDL, ensure_schema
from xray.errors import StorageConflict
from xray.repositories.candidates import PostgresCandidatesRepository
from xray.repositories.runs import RUN_COLUMNS, PostgresRunsRepository
from xray.repositories.steps import METRIC_COLUMNS, STEP_COLUMNS, PostgresStepsRepository


class FakeCursor:
    def __init__(self, conn: "FakeConnection"):
        self._conn = conn
        self.rowcount = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query: str, params=None):
        self._conn.statements.append((query, params))
        self.rowcount = self._conn.rowcount

    def executemany(self, query: str, params_seq):
        self._conn.many.append((query, list(params_seq)))

    def fetchone(self):
        return self._conn.rows[0] if self._conn.rows else None

    def fetchall(self):
        return list(self._conn.rows)


class FakeConnection:
    def __init__(self, *, rows=None, rowcount: int = 1):
        self.statements: list[tuple[str, object]] = []
        self.many: list[tuple[str, list]] = []
        self.rows = rows or []
        self.rowcount = rowcount

    def cursor(self):
        return FakeCursor(self)


class FakeRunner:
    def __init__(self, conn: FakeConnection):
        self.conn = conn
        self.calls = 0

    def run_in_tx(self, *, fn):
        self.calls += 1
        return fn(self.conn)


def _ts() -> datetime:
    return datetime(2026, 1, 2, 12, 0, tzinfo=timezone.utc)


def test_repositories_reject_invalid_table_names():
    runner = FakeRunner(FakeConnection())
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresRunsRepository(tx_runner=runner, table_name="runs;drop table runs")
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresStepsRepository(tx_runner=runner, metrics_table="m m")
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresCandidatesRepository(tx_runner=runner, outcomes_table="1outcomes")


def test_run_insert_uses_on_conflict_and_jsonb():
    conn = FakeConnection(rowcount=1)
    repo = PostgresRunsRepository(tx_runner=FakeRunner(conn))
    created = repo.insert_if_absent(
        conn,
        run={"run_id": "r1", "trace_id": "t", "pipeline": "p", "status": "running", "started_at": _ts(), "tags": {"b": 1}},
    )
    assert created is True
    sql, params = conn.statements[0]
    assert "INSERT INTO runs" in sql
    assert "ON CONFLICT (run_id) DO NOTHING" in sql
    assert "%s::jsonb" in sql
    assert params[RUN_COLUMNS.index("tags")] == '{"b": 1}'
    assert params[RUN_COLUMNS.index("input")] is None

    conn.rowcount = 0
    assert repo.insert_if_absent(conn, run={"run_id": "r1"}) is False


def test_run_update_locks_and_only_touches_mutable_columns():
    row = tuple("r1" if col == "run_id" else ("success" if col == "status" else None) for col in RUN_COLUMNS)
    conn = FakeConnection(rows=[row])
    repo = PostgresRunsRepository(tx_runner=FakeRunner(conn))

    current = repo.get_for_update(conn, run_id="r1")
    assert current["status"] == "success"
    assert current["tags"] == {}
    assert "FOR UPDATE" in conn.statements[0][0]

    repo.update(conn, run_id="r1", changes={"status": "success", "output": {"x": 1}})
    sql, params = conn.statements[-1]
    assert sql == "UPDATE runs SET output = %s::jsonb, status = %s WHERE run_id = %s"
    assert params == ('{"x": 1}', "success", "r1")

    with pytest.raises(ValueError, match="immutable"):
        repo.update(conn, run_id="r1", changes={"pipeline": "other"})


def test_run_list_builds_filters_and_limit():
    conn = FakeConnection(rows=[])
    runner = FakeRunner(conn)
    repo = PostgresRunsRepository(tx_runner=runner)
    assert repo.list_runs(pipeline="p", trace_id=None, limit=5) == []
    sql, params = conn.statements[0]
    assert "WHERE pipeline = %s" in sql
    assert "ORDER BY started_at DESC" in sql
    assert params == ("p", 5)
    assert runner.calls == 1


def test_step_get_maps_metrics_from_left_join():
    step_values = {col: None for col in STEP_COLUMNS}
    step_values.update({"step_id": "s1", "run_id": "r1", "name": "n", "type": "filter", "status": "success"})
    metric_values = {
        "step_id": "s1",
        "candidates_in": 3,
        "candidates_captured": 3,
        "accepted_count": 1,
        "rejected_count": 2,
        "selected_count": 0,
        "rejection_rate": 2 / 3,
        "rejection_histogram": {"PRICE": 2},
    }
    row = tuple(step_values[c] for c in STEP_COLUMNS) + tuple(metric_values[c] for c in METRIC_COLUMNS)
    conn = FakeConnection(rows=[row])
    repo = PostgresStepsRepository(tx_runner=FakeRunner(conn))

    step = repo.get(step_id="s1")
    assert step["metrics"]["rejection_histogram"] == {"PRICE": 2}
    assert step["capture_policy"] == {}
    assert "LEFT JOIN step_metrics m" in conn.statements[0][0]

    no_metrics = tuple(step_values[c] for c in STEP_COLUMNS) + (None,) * len(METRIC_COLUMNS)
    conn.rows = [no_metrics]
    assert repo.get(step_id="s1")["metrics"] is None


def test_step_metrics_upsert_overwrites_by_step_id():
    conn = FakeConnection()
    repo = PostgresStepsRepository(tx_runner=FakeRunner(conn))
    repo.upsert_metrics(
        conn,
        metrics={"step_id": "s1", "candidates_in": 4, "rejected_count": 1, "rejection_rate": 0.25, "rejection_histogram": {"X": 1}},
    )
    sql, params = conn.statements[0]
    assert "ON CONFLICT (step_id) DO UPDATE" in sql
    assert "rejection_histogram = EXCLUDED.rejection_histogram" in sql
    assert params == ("s1", 4, 0, 0, 1, 0, 0.25, '{"X": 1}')


def test_query_steps_filters_by_rejection_rate():
    conn = FakeConnection(rows=[])
    repo = PostgresStepsRepository(tx_runner=FakeRunner(conn))
    repo.query_steps(step_type="filter", name=None, min_rejection_rate=0.9, limit=50)
    sql, params = conn.statements[0]
    assert "m.rejection_rate >= %s AND s.type = %s" in sql
    assert params == (0.9, "filter", 50)


def test_candidate_and_outcome_upserts_keep_existing_values_for_missing_fields():
    conn = FakeConnection()
    repo = PostgresCandidatesRepository(tx_runner=FakeRunner(conn))
    assert repo.upsert_candidates(conn, step_id="s1", candidates=[]) == 0
    written = repo.upsert_candidates(
        conn,
        step_id="s1",
        candidates=[{"candidate_id": "a", "candidate_type": "product", "rank": 1, "payload": {"t": 1}}],
    )
    assert written == 1
    sql, params = conn.many[0]
    assert "ON CONFLICT (step_id, candidate_type, candidate_id) DO UPDATE" in sql
    assert "COALESCE(EXCLUDED.score, step_candidates.score)" in sql
    assert params == [("s1", "product", "a", 1, None, '{"t": 1}', "{}")]

    repo.upsert_outcomes(
        conn,
        step_id="s1",
        outcomes=[{"candidate_id": "a", "candidate_type": "product", "outcome": "rejected", "reason_code": "PRICE"}],
    )
    sql, params = conn.many[1]
    assert "ON CONFLICT (step_id, candidate_type, candidate_id, outcome) DO UPDATE" in sql
    assert params == [("s1", "product", "a", "rejected", "PRICE", None, None)]


def test_ensure_schema_runs_every_statement():
    conn = FakeConnection()
    ensure_schema(FakeRunner(conn))
    assert len(conn.statements) == len(POSTGRES_DDL)
    joined = "\n".join(sql for sql, _ in conn.statements)
    assert "PRIMARY KEY (step_id, candidate_type, candidate_id, outcome)" in joined


class _FakeIntegrityError(Exception):
    pass


class _FakePgConnection:
    def __init__(self):
        self.committed = False
        self.rolled_back = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True


class _FakePsycopg:
    IntegrityError = _FakeIntegrityError

    def __init__(self):
        self.connections: list[_FakePgConnection] = []
        self.dsns: list[str] = []

    def connect(self, dsn):
        self.dsns.append(dsn)
        conn = _FakePgConnection()
        self.connections.append(conn)
        return conn


def test_tx_runner_commits_and_rolls_back(monkeypatch):
    fake = _FakePsycopg()
    monkeypatch.setattr(postgres_module, "_import_psycopg", lambda: fake)
    runner = PostgresTxRunner(" postgresql://xray@localhost/xray ")

    assert runner.run_in_tx(fn=lambda conn: "ok") == "ok"
    assert fake.dsns == ["postgresql://xray@localhost/xray"]
    assert fake.connections[0].committed is True

    def conflict(conn):
        raise _FakeIntegrityError("duplicate key")

    with pytest.raises(StorageConflict) as exc_info:
        runner.run_in_tx(fn=conflict)
    assert exc_info.value.http_status == 409
    assert fake.connections[1].rolled_back is True
    assert fake.connections[1].committed is False

    def broken(conn):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        runner.run_in_tx(fn=broken)
    assert fake.connections[2].rolled_back is True


def test_tx_runner_requires_dsn():
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        PostgresTxRunner("  ")
