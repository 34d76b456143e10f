from __future__ import annotations

import pytest

from xray import store_backends
from xray.config import ClientConfig
from xray.store import InMemoryTraceStore, InMemoryTx, create_store_from_env


def test_store_factory_defaults_to_memory():
    store = create_store_from_env({})
    assert isinstance(store, InMemoryTraceStore)
    assert store.backend_name == "memory"


def test_store_factory_rejects_unsupported_backend():
    with pytest.raises(RuntimeError, match="unsupported store backend"):
        create_store_from_env({"XRAY_STORE_BACKEND": "mongo"})


def test_postgres_backend_requires_dsn():
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        create_store_from_env({"XRAY_STORE_BACKEND": "postgres"})


def test_postgres_backend_wires_repositories(monkeypatch):
    calls: list[object] = []
    monkeypatch.setattr(store_backends, "ensure_schema", lambda runner: calls.append(runner))

    store = create_store_from_env(
        {"XRAY_STORE_BACKEND": "postgres", "POSTGRES_DSN": "postgresql://localhost/xray"}
    )
    assert store.backend_name == "postgres"
    assert calls == [store.tx_runner]

    skipped = create_store_from_env(
        {
            "XRAY_STORE_BACKEND": "postgres",
            "POSTGRES_DSN": "postgresql://localhost/xray",
            "XRAY_POSTGRES_INIT_SCHEMA": "false",
        }
    )
    assert skipped.backend_name == "postgres"
    assert len(calls) == 1


def test_in_memory_tx_rollback_restores_tables():
    table = {"a": {"v": 1}}
    tx = InMemoryTx()
    tx.remember(table, "a")
    table["a"]["v"] = 2
    tx.remember(table, "b")
    table["b"] = {"v": 3}

    tx.rollback()
    assert table == {"a": {"v": 1}}


def test_store_reset_clears_everything(store):
    store.runs["r"] = {"run_id": "r"}
    store.step_candidates[("s", "t", "c")] = {}
    store.reset()
    assert set(store.counts().values()) == {0}


def test_client_config_defaults():
    cfg = ClientConfig.from_env({})
    assert cfg.endpoint == "http://localhost:4319"
    assert cfg.api_key == ""
    assert (cfg.timeout_ms, cfg.flush_interval_ms, cfg.max_queue, cfg.batch_size) == (1500, 500, 2000, 50)
    assert cfg.auto_flush is True


def test_client_config_reads_env_with_fallbacks():
    cfg = ClientConfig.from_env(
        {
            "XRAY_ENDPOINT": "http://collector:4319",
            "XRAY_API_KEY": " key ",
            "XRAY_TIMEOUT_MS": "250",
            "XRAY_FLUSH_INTERVAL_MS": "not-a-number",
            "XRAY_MAX_QUEUE": "0",
            "XRAY_BATCH_SIZE": "10",
            "XRAY_AUTO_FLUSH": "off",
        }
    )
    assert cfg.endpoint == "http://collector:4319"
    assert cfg.api_key == "key"
    assert cfg.timeout_ms == 250
    assert cfg.flush_interval_ms == 500
    assert cfg.max_queue == 1
    assert cfg.batch_size == 10
    assert cfg.auto_flush is False


def test_client_config_from_process_env(monkeypatch):
    monkeypatch.setenv("XRAY_BATCH_SIZE", "7")
    assert ClientConfig.from_env().batch_size == 7


def test_client_config_caps_batch_size_at_service_limit():
    assert ClientConfig.from_env({"XRAY_BATCH_SIZE": "600"}).batch_size == 500
