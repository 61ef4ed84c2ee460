"""Tests for the reconnection policy."""

import pytest

from wa_gateway.config.schema import LifecycleConfig
from wa_gateway.engine.base import CloseReason
from wa_gateway.lifecycle.policy import CloseDecision, decide_on_close, retries_exhausted, retry_delay


class TestDecideOnClose:
    @pytest.mark.parametrize("ever_connected", [True, False])
    @pytest.mark.parametrize("scan_shown", [True, False])
    def test_logout_always_terminal(self, ever_connected, scan_shown):
        assert decide_on_close(CloseReason.LOGGED_OUT, ever_connected, scan_shown) is CloseDecision.TERMINAL

    def test_previously_connected_retries(self):
        assert decide_on_close(CloseReason.CONNECTION_LOST, True, False) is CloseDecision.RETRY
        assert decide_on_close(CloseReason.CONNECTION_LOST, True, True) is CloseDecision.RETRY

    def test_close_before_scan_code_retries(self):
        assert decide_on_close(CloseReason.RESTART_REQUIRED, False, False) is CloseDecision.RETRY

    def test_abandoned_scan_is_terminal(self):
        assert decide_on_close(CloseReason.TIMED_OUT, False, True) is CloseDecision.TERMINAL


class TestRetryDelay:
    def test_base_delays(self):
        config = LifecycleConfig()
        assert retry_delay(config, True, 1) == 3.0
        assert retry_delay(config, False, 1) == 5.0

    def test_backoff_and_cap(self):
        config = LifecycleConfig(reconnect_delay_s=1.0, backoff_factor=2.0, max_reconnect_delay_s=5.0)
        assert [retry_delay(config, True, n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_cap_never_below_base(self):
        config = LifecycleConfig(stalled_retry_delay_s=10.0, max_reconnect_delay_s=2.0)
        assert retry_delay(config, False, 3) == 10.0


class TestRetriesExhausted:
    def test_unlimited_by_default(self):
        assert not retries_exhausted(LifecycleConfig(), 1000)

    def test_bounded(self):
        config = LifecycleConfig(max_retries=2)
        assert not retries_exhausted(config, 2)
        assert retries_exhausted(config, 3)
