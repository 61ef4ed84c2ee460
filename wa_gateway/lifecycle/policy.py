"""Reconnection policy.

Pure functions deciding what happens after a connection closes, so the
controller never has to reason about it inline.
"""

from enum import Enum

from wa_gateway.config.schema import LifecycleConfig
from wa_gateway.engine.base import CloseReason


class CloseDecision(str, Enum):
    RETRY = "retry"
    TERMINAL = "terminal"


def decide_on_close(
    reason: CloseReason,
    ever_completed_handshake: bool,
    scan_code_shown: bool,
) -> CloseDecision:
    """Decide whether a closed connection should be retried.

    - An explicit logout is always terminal.
    - A tenant that has completed a handshake before reconnects.
    - An attempt that closed before producing any scan code is a transient
      handshake failure and reconnects.
    - An attempt that showed a scan code but never completed the handshake
      was abandoned or expired: terminal.

    Args:
        reason: Why the connection closed.
        ever_completed_handshake: Whether the session was ever connected.
        scan_code_shown: Whether the closed attempt produced a scan code.
    """
    if reason is CloseReason.LOGGED_OUT:
        return CloseDecision.TERMINAL
    if ever_completed_handshake or not scan_code_shown:
        return CloseDecision.RETRY
    return CloseDecision.TERMINAL


def retry_delay(config: LifecycleConfig, ever_completed_handshake: bool, attempt: int) -> float:
    """Delay before reconnect attempt number ``attempt`` (1-based).

    The first retry waits ``reconnect_delay_s`` after a session that was
    connected and ``stalled_retry_delay_s`` otherwise; each further
    consecutive retry multiplies the delay by ``backoff_factor``, capped at
    ``max_reconnect_delay_s``.
    """
    base = config.reconnect_delay_s if ever_completed_handshake else config.stalled_retry_delay_s
    delay = base * (config.backoff_factor ** max(attempt - 1, 0))
    return min(delay, max(config.max_reconnect_delay_s, base))


def retries_exhausted(config: LifecycleConfig, attempt: int) -> bool:
    """Whether ``attempt`` exceeds ``max_retries`` (0 means unlimited)."""
    return config.max_retries > 0 and attempt > config.max_retries
