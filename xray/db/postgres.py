from __future__ import annotations

from collections.abc import Callable
from typing import Any

from xray.errors import StorageConflict


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction.

    Everything ``fn`` executes on the connection commits together or is rolled
    back together. Concurrent writers of the same row serialize on PostgreSQL's
    row locks (``INSERT ... ON CONFLICT`` and ``SELECT ... FOR UPDATE``).
    """

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def run_in_tx(self, *, fn: Callable[[Any], Any]) -> Any:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            try:
                result = fn(conn)
            except psycopg.IntegrityError as exc:
                conn.rollback()
                raise StorageConflict(f"constraint violation: {exc}") from exc
            except Exception:
                conn.rollback()
                raise
            conn.commit()
            return result
