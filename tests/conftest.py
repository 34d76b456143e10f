import pathlib
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from xray.main import create_app
from xray.store import InMemoryTraceStore


class RecordingTransport:
    """Collects delivered batches; ``failures`` is a list of exceptions raised on successive sends."""

    def __init__(self, failures=None):
        self.batches: list[list] = []
        self.failures = list(failures or [])
        self.calls = 0

    def send(self, batch):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        self.batches.append(list(batch))
        return {"accepted": len(batch), "rejected": 0, "results": []}

    @property
    def events(self) -> list:
        return [event for batch in self.batches for event in batch]


class SteppingClock:
    def __init__(self, start: datetime | None = None, step_ms: int = 5):
        self.now = start or datetime(2026, 1, 2, 12, 0, 0, tzinfo=timezone.utc)
        self.step = timedelta(milliseconds=step_ms)

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    for name in (
        "XRAY_STORE_BACKEND",
        "POSTGRES_DSN",
        "XRAY_API_KEY",
        "XRAY_ENDPOINT",
        "XRAY_TIMEOUT_MS",
        "XRAY_FLUSH_INTERVAL_MS",
        "XRAY_MAX_QUEUE",
        "XRAY_BATCH_SIZE",
        "XRAY_AUTO_FLUSH",
    ):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def make_transport():
    return RecordingTransport


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock()


@pytest.fixture
def store() -> InMemoryTraceStore:
    return InMemoryTraceStore()


@pytest.fixture
def client(store: InMemoryTraceStore) -> TestClient:
    return TestClient(create_app(store, api_key=""))
