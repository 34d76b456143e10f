from __future__ import annotations

import copy
import random
import uuid
from collections.abc import Callable, Iterator, Mapping
from contextlib import ExitStack, contextmanager
from datetime import datetime
from typing import Any

from xray.config import ClientConfig
from xray.context import TraceContext, use_context
from xray.errors import RunAlreadyFinalized
from xray.event_queue import ErrorHook, EventQueue, FlushStats
from xray.models import CapturePolicy, OutboundEvent, isoformat, normalize_error, utcnow
from xray.step_recorder import StepRecorder
from xray.transport import HttpTransport, Transport


def _new_id() -> str:
    return str(uuid.uuid4())


class Tracer:
    """Entry point for instrumented code.

    Construct one per process (or per pipeline) and pass it to the code that
    starts runs; there is no module-level default instance.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        transport: Transport | None = None,
        queue: EventQueue | None = None,
        on_error: ErrorHook | None = None,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = _new_id,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or ClientConfig.from_env()
        self._owned_transport: HttpTransport | None = None
        if queue is None:
            if transport is None:
                transport = self._owned_transport = HttpTransport(
                    endpoint=self.config.endpoint,
                    api_key=self.config.api_key,
                    timeout_ms=self.config.timeout_ms,
                )
            queue = EventQueue(
                transport=transport,
                max_queue=self.config.max_queue,
                batch_size=self.config.batch_size,
                flush_interval_ms=self.config.flush_interval_ms,
                on_error=on_error,
            )
            if self.config.auto_flush:
                queue.start()
        self.queue = queue
        self._clock = clock
        self._id_factory = id_factory
        self._rng = rng

    def start_run(
        self,
        *,
        trace_id: str,
        pipeline: str,
        pipeline_version: str | None = None,
        input: Any = None,
        tags: Mapping[str, Any] | None = None,
        meta: Mapping[str, Any] | None = None,
    ) -> "RunHandle":
        run = RunHandle(
            tracer=self,
            run_id=self._id_factory(),
            trace_id=trace_id,
            pipeline=pipeline,
            pipeline_version=pipeline_version,
            input=input,
            tags=tags,
            meta=meta,
        )
        run.emit_running()
        return run

    def flush(self) -> FlushStats:
        return self.queue.flush()

    def shutdown(self, *, flush: bool = False) -> FlushStats | None:
        try:
            return self.queue.shutdown(flush=flush)
        finally:
            if self._owned_transport is not None:
                self._owned_transport.close()
                self._owned_transport = None


class RunHandle:
    def __init__(
        self,
        *,
        tracer: Tracer,
        run_id: str,
        trace_id: str,
        pipeline: str,
        pipeline_version: str | None = None,
        input: Any = None,
        tags: Mapping[str, Any] | None = None,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        self._tracer = tracer
        self.run_id = run_id
        self.trace_id = trace_id
        self.pipeline = pipeline
        self.pipeline_version = pipeline_version
        self._input = copy.deepcopy(input)
        self._tags = dict(tags or {})
        self._meta = dict(meta or {})
        self.started_at = tracer._clock()
        self.status = "running"
        self._stack: ExitStack | None = None

    def __enter__(self) -> "RunHandle":
        self._stack = ExitStack()
        self._stack.enter_context(use_context(self.context()))
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if self.status == "running":
                if exc is not None:
                    self.end_error(exc)
                else:
                    self.end_success()
        finally:
            if self._stack is not None:
                self._stack.close()
                self._stack = None
        return False

    def context(self) -> TraceContext:
        return TraceContext(run_id=self.run_id, trace_id=self.trace_id)

    @contextmanager
    def activate(self) -> Iterator[TraceContext]:
        with use_context(self.context()) as ctx:
            yield ctx

    def _body(self, status: str) -> dict[str, Any]:
        body: dict[str, Any] = {
            "runId": self.run_id,
            "traceId": self.trace_id,
            "pipeline": self.pipeline,
            "status": status,
            "startedAt": isoformat(self.started_at),
            "tags": dict(self._tags),
            "meta": dict(self._meta),
        }
        if self.pipeline_version is not None:
            body["pipelineVersion"] = self.pipeline_version
        return body

    def emit_running(self) -> OutboundEvent:
        body = self._body("running")
        body["input"] = self._input
        event = OutboundEvent(kind="run", body=copy.deepcopy(body))
        self._tracer.queue.enqueue(event)
        return event

    def step(
        self,
        name: str,
        step_type: str,
        *,
        input: Any = None,
        meta: Mapping[str, Any] | None = None,
        capture_policy: CapturePolicy | Mapping[str, Any] | None = None,
        parent: StepRecorder | str | None = None,
    ) -> StepRecorder:
        parent_step_id = parent.step_id if isinstance(parent, StepRecorder) else parent
        recorder = StepRecorder(
            sink=self._tracer.queue,
            step_id=self._tracer._id_factory(),
            run_id=self.run_id,
            name=name,
            step_type=step_type,
            input=input,
            meta=meta,
            capture_policy=capture_policy,
            parent_step_id=parent_step_id,
            clock=self._tracer._clock,
            rng=self._tracer._rng,
        )
        recorder.emit_running()
        return recorder

    def _finish(self, status: str, *, output: Any = None, error: Any = None) -> OutboundEvent:
        if self.status != "running":
            raise RunAlreadyFinalized(self.run_id, self.status)
        self.status = status
        ended_at = self._tracer._clock()
        body = self._body(status)
        body["endedAt"] = isoformat(ended_at)
        body["durationMs"] = max(0, int((ended_at - self.started_at).total_seconds() * 1000))
        if output is not None:
            body["output"] = output
        if error is not None:
            body["error"] = error
        event = OutboundEvent(kind="run", body=copy.deepcopy(body))
        self._tracer.queue.enqueue(event)
        return event

    def end_success(self, output: Any = None) -> OutboundEvent:
        return self._finish("success", output=output)

    def end_error(self, error: BaseException | Any) -> OutboundEvent:
        return self._finish("error", error=normalize_error(error))
