from xray.config import ClientConfig
from xray.context import TraceContext, current_context, use_context
from xray.errors import RunAlreadyFinalized, StepAlreadyFinalized, TransportError, XRayError
from xray.models import Candidate, CapturePolicy, Outcome, StepMetrics
from xray.step_recorder import StepRecorder
from xray.tracer import RunHandle, Tracer

__all__ = [
    "Candidate",
    "CapturePolicy",
    "ClientConfig",
    "Outcome",
    "RunAlreadyFinalized",
    "RunHandle",
    "StepAlreadyFinalized",
    "StepMetrics",
    "StepRecorder",
    "TraceContext",
    "Tracer",
    "TransportError",
    "XRayError",
    "current_context",
    "use_context",
]
