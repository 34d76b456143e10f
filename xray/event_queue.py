from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from xray.errors import TransportError
from xray.models import MAX_BATCH_EVENTS, OutboundEvent
from xray.transport import Transport, encode_body

logger = logging.getLogger(__name__)

ErrorHook = Callable[[Exception], None]


@dataclass
class FlushStats:
    rounds: int = 0
    delivered: int = 0
    failed_rounds: int = 0
    dropped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "rounds": self.rounds,
            "delivered": self.delivered,
            "failed_rounds": self.failed_rounds,
            "dropped": self.dropped,
        }


class EventQueue:
    """Bounded in-process outbox drained in batches by a timer or explicit flush.

    ``enqueue`` only touches the buffer under a short lock and never does I/O.
    An event with no strict JSON form is reported and dropped there, so it can
    never block the batches behind it.
    Flushes are serialized by ``_flush_lock``: an explicit ``flush()`` waits for
    an in-flight flush, a timer tick skips when one is already running.
    """

    def __init__(
        self,
        *,
        transport: Transport,
        max_queue: int = 2000,
        batch_size: int = 50,
        flush_interval_ms: int = 500,
        on_error: ErrorHook | None = None,
    ) -> None:
        self._transport = transport
        self.max_queue = max(1, int(max_queue))
        self.batch_size = min(MAX_BATCH_EVENTS, max(1, int(batch_size)))
        self.flush_interval_ms = max(1, int(flush_interval_ms))
        self._on_error = on_error
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._buffer: deque[OutboundEvent] = deque()
        self._evicted = 0
        self._dropped = 0
        self._stop = threading.Event()
        self._timer: threading.Thread | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)

    @property
    def evicted_count(self) -> int:
        with self._lock:
            return self._evicted

    @property
    def dropped_count(self) -> int:
        """Events discarded because they could not be encoded or the service refused them."""
        with self._lock:
            return self._dropped

    def _count_dropped(self, count: int) -> None:
        with self._lock:
            self._dropped += count

    def snapshot(self) -> list[OutboundEvent]:
        with self._lock:
            return list(self._buffer)

    def enqueue(self, event: OutboundEvent) -> None:
        try:
            encode_body(event.to_wire())
        except TransportError as exc:
            event_id = event.body.get("stepId") or event.body.get("runId")
            self._count_dropped(1)
            self._report(TransportError(f"dropped {event.kind} event {event_id}: {exc}", retryable=False))
            return
        with self._lock:
            self._buffer.append(event)
            evicted = self._trim_locked()
        if evicted:
            logger.warning("event queue full (max_queue=%d); evicted %d oldest events", self.max_queue, evicted)

    def _trim_locked(self) -> int:
        evicted = 0
        while len(self._buffer) > self.max_queue:
            self._buffer.popleft()
            evicted += 1
        self._evicted += evicted
        return evicted

    def _take_batch(self) -> list[OutboundEvent]:
        with self._lock:
            size = min(self.batch_size, len(self._buffer))
            return [self._buffer.popleft() for _ in range(size)]

    def _restore(self, batch: list[OutboundEvent]) -> None:
        with self._lock:
            self._buffer.extendleft(reversed(batch))
            evicted = self._trim_locked()
        if evicted:
            logger.warning("event queue overflow while restoring a failed batch; evicted %d events", evicted)

    def _report(self, exc: Exception) -> None:
        if self._on_error is None:
            logger.warning("event delivery failed: %s", exc)
            return
        try:
            self._on_error(exc)
        except Exception:
            logger.exception("event queue error hook raised")

    def _drain(self) -> FlushStats:
        stats = FlushStats()
        while True:
            batch = self._take_batch()
            if not batch:
                break
            stats.rounds += 1
            try:
                self._transport.send(batch)
            except TransportError as exc:
                if exc.retryable:
                    self._restore(batch)
                    stats.failed_rounds += 1
                    self._report(exc)
                    break
                # Refused by the service or not encodable; resending it cannot succeed.
                stats.dropped += len(batch)
                self._count_dropped(len(batch))
                self._report(exc)
                continue
            except OSError as exc:
                self._restore(batch)
                stats.failed_rounds += 1
                self._report(exc)
                break
            except Exception as exc:
                # Not a delivery failure; retrying would fail the same way forever.
                stats.dropped += len(batch)
                self._count_dropped(len(batch))
                self._report(exc)
                continue
            stats.delivered += len(batch)
        return stats

    def flush(self) -> FlushStats:
        with self._flush_lock:
            return self._drain()

    def _flush_tick(self) -> FlushStats | None:
        if not self._flush_lock.acquire(blocking=False):
            return None
        try:
            return self._drain()
        finally:
            self._flush_lock.release()

    def _run_timer(self) -> None:
        while not self._stop.wait(self.flush_interval_ms / 1000.0):
            self._flush_tick()

    def start(self) -> None:
        if self._timer is not None and self._timer.is_alive():
            return
        self._stop.clear()
        self._timer = threading.Thread(target=self._run_timer, name="xray-flush", daemon=True)
        self._timer.start()

    def shutdown(self, *, flush: bool = False, timeout: float | None = 5.0) -> FlushStats | None:
        """Stop the periodic flush; pending events are delivered only when ``flush`` is set."""
        self._stop.set()
        timer = self._timer
        self._timer = None
        if timer is not None and timer is not threading.current_thread():
            timer.join(timeout=timeout)
        if flush:
            return self.flush()
        return None
