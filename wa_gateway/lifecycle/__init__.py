"""Session lifecycle: reconnection policy and per-tenant controller."""

from wa_gateway.lifecycle.controller import LifecycleController, ScanCodeRenderer, passthrough_renderer
from wa_gateway.lifecycle.policy import CloseDecision, decide_on_close, retries_exhausted, retry_delay

__all__ = [
    "LifecycleController",
    "ScanCodeRenderer",
    "passthrough_renderer",
    "CloseDecision",
    "decide_on_close",
    "retries_exhausted",
    "retry_delay",
]
