from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from xray.models import MAX_BATCH_EVENTS


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ClientConfig:
    endpoint: str
    api_key: str = ""
    timeout_ms: int = 1500
    flush_interval_ms: int = 500
    max_queue: int = 2000
    batch_size: int = 50
    auto_flush: bool = True

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ClientConfig":
        env = os.environ if environ is None else environ
        return cls(
            endpoint=str(env.get("XRAY_ENDPOINT", "http://localhost:4319")).strip() or "http://localhost:4319",
            api_key=str(env.get("XRAY_API_KEY", "")).strip(),
            timeout_ms=_env_int(env, "XRAY_TIMEOUT_MS", default=1500, minimum=1),
            flush_interval_ms=_env_int(env, "XRAY_FLUSH_INTERVAL_MS", default=500, minimum=1),
            max_queue=_env_int(env, "XRAY_MAX_QUEUE", default=2000, minimum=1),
            batch_size=min(MAX_BATCH_EVENTS, _env_int(env, "XRAY_BATCH_SIZE", default=50, minimum=1)),
            auto_flush=_env_bool(env, "XRAY_AUTO_FLUSH", default=True),
        )
