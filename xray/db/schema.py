from __future__ import annotations

from typing import Any

from xray.db.postgres import PostgresTxRunner

# Steps do not reference runs by foreign key: run and step events travel
# independently and either may arrive first.
POSTGRES_DDL: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS runs (
      run_id TEXT PRIMARY KEY,
      trace_id TEXT NOT NULL,
      pipeline TEXT NOT NULL,
      pipeline_version TEXT,
      status TEXT NOT NULL DEFAULT 'running',
      started_at TIMESTAMPTZ NOT NULL,
      ended_at TIMESTAMPTZ,
      duration_ms INTEGER,
      input JSONB,
      output JSONB,
      error JSONB,
      tags JSONB NOT NULL DEFAULT '{}',
      meta JSONB NOT NULL DEFAULT '{}'
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_runs_pipeline_started ON runs(pipeline, started_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_runs_trace_id ON runs(trace_id)",
    """
    CREATE TABLE IF NOT EXISTS steps (
      step_id TEXT PRIMARY KEY,
      run_id TEXT NOT NULL,
      parent_step_id TEXT,
      name TEXT NOT NULL,
      type TEXT NOT NULL,
      status TEXT NOT NULL DEFAULT 'running',
      started_at TIMESTAMPTZ NOT NULL,
      ended_at TIMESTAMPTZ,
      duration_ms INTEGER,
      input JSONB,
      output JSONB,
      reasoning JSONB,
      meta JSONB NOT NULL DEFAULT '{}',
      capture_policy JSONB NOT NULL DEFAULT '{}'
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_steps_run_id ON steps(run_id)",
    "CREATE INDEX IF NOT EXISTS idx_steps_name ON steps(name)",
    "CREATE INDEX IF NOT EXISTS idx_steps_type ON steps(type)",
    """
    CREATE TABLE IF NOT EXISTS step_metrics (
      step_id TEXT PRIMARY KEY REFERENCES steps(step_id) ON DELETE CASCADE,
      candidates_in INTEGER NOT NULL DEFAULT 0,
      candidates_captured INTEGER NOT NULL DEFAULT 0,
      accepted_count INTEGER NOT NULL DEFAULT 0,
      rejected_count INTEGER NOT NULL DEFAULT 0,
      selected_count INTEGER NOT NULL DEFAULT 0,
      rejection_rate DOUBLE PRECISION NOT NULL DEFAULT 0,
      rejection_histogram JSONB NOT NULL DEFAULT '{}'
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_step_metrics_rejection_rate ON step_metrics(rejection_rate)",
    """
    CREATE TABLE IF NOT EXISTS step_candidates (
      step_id TEXT NOT NULL REFERENCES steps(step_id) ON DELETE CASCADE,
      candidate_type TEXT NOT NULL,
      candidate_id TEXT NOT NULL,
      rank INTEGER,
      score DOUBLE PRECISION,
      payload JSONB,
      meta JSONB NOT NULL DEFAULT '{}',
      PRIMARY KEY (step_id, candidate_type, candidate_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_step_candidates_rank ON step_candidates(step_id, rank)",
    """
    CREATE TABLE IF NOT EXISTS candidate_outcomes (
      step_id TEXT NOT NULL REFERENCES steps(step_id) ON DELETE CASCADE,
      candidate_type TEXT NOT NULL,
      candidate_id TEXT NOT NULL,
      outcome TEXT NOT NULL CHECK (outcome IN ('accepted', 'rejected', 'selected')),
      reason_code TEXT,
      reason_detail JSONB,
      reasoning_text TEXT,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      PRIMARY KEY (step_id, candidate_type, candidate_id, outcome)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_candidate_outcomes_reason ON candidate_outcomes(step_id, reason_code)",
)


def ensure_schema(tx_runner: PostgresTxRunner) -> None:
    def _op(conn: Any) -> None:
        with conn.cursor() as cur:
            for statement in POSTGRES_DDL:
                cur.execute(statement)

    tx_runner.run_in_tx(fn=_op)
