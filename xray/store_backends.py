from __future__ import annotations

from xray.db.postgres import PostgresTxRunner
from xray.db.schema import ensure_schema
from xray.repositories.candidates import PostgresCandidatesRepository
from xray.repositories.runs import PostgresRunsRepository
from xray.repositories.steps import PostgresStepsRepository


class PostgresTraceStore:
    """Relational trace store; every ingest runs in one PostgreSQL transaction."""

    backend_name = "postgres"

    def __init__(self, *, dsn: str, init_schema: bool = True, tx_runner: PostgresTxRunner | None = None) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must be provided for postgres store backend")
        self.tx_runner = tx_runner or PostgresTxRunner(dsn)
        self.runs_repository = PostgresRunsRepository(tx_runner=self.tx_runner, table_name="runs")
        self.steps_repository = PostgresStepsRepository(
            tx_runner=self.tx_runner,
            table_name="steps",
            metrics_table="step_metrics",
        )
        self.candidates_repository = PostgresCandidatesRepository(
            tx_runner=self.tx_runner,
            candidates_table="step_candidates",
            outcomes_table="candidate_outcomes",
        )
        if init_schema:
            ensure_schema(self.tx_runner)
