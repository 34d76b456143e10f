from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any, Protocol

import requests

from xray.errors import TransportError
from xray.models import OutboundEvent

logger = logging.getLogger(__name__)


class Transport(Protocol):
    def send(self, batch: Sequence[OutboundEvent]) -> dict[str, Any]: ...


def encode_body(body: Any) -> str:
    """Serialize a wire body as strict JSON.

    NaN, infinities and objects with no JSON form raise a non-retryable
    ``TransportError``: resending the same bytes can never succeed.
    """
    try:
        return json.dumps(body, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise TransportError(f"event is not JSON-encodable: {exc}", retryable=False) from exc


class HttpTransport:
    """Delivers one batch of events per POST to the ingestion service."""

    def __init__(
        self,
        *,
        endpoint: str,
        api_key: str = "",
        timeout_ms: int = 1500,
        session: requests.Session | None = None,
    ) -> None:
        if not endpoint.strip():
            raise ValueError("endpoint must not be empty")
        self.endpoint = endpoint.strip().rstrip("/")
        self.timeout_ms = max(1, int(timeout_ms))
        self._session = session or requests.Session()
        self._session.headers["content-type"] = "application/json"
        if api_key:
            self._session.headers["x-api-key"] = api_key

    @property
    def batch_url(self) -> str:
        return f"{self.endpoint}/v1/batch"

    def send(self, batch: Sequence[OutboundEvent]) -> dict[str, Any]:
        data = encode_body({"events": [ev.to_wire() for ev in batch]})
        try:
            response = self._session.post(
                self.batch_url,
                data=data,
                timeout=self.timeout_ms / 1000.0,
            )
        except requests.exceptions.Timeout as exc:
            raise TransportError(f"delivery timed out after {self.timeout_ms}ms: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"delivery failed: {exc}") from exc

        if response.status_code >= 500:
            raise TransportError(
                f"ingestion service returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise TransportError(
                f"ingestion service rejected batch with {response.status_code}: {response.text[:200]}",
                retryable=False,
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError:
            return {}
        data = payload.get("data") if isinstance(payload, dict) else None
        if isinstance(data, dict):
            rejected = int(data.get("rejected", 0) or 0)
            if rejected:
                logger.warning("ingestion service rejected %d of %d events", rejected, len(batch))
            return data
        return {}

    def close(self) -> None:
        self._session.close()
