"""Tests for session records and the transition table."""

import pytest

from wa_gateway.session.models import InvalidTransitionError, SessionRecord, SessionState, SessionStatus


def connected_record(phone="555") -> SessionRecord:
    record = SessionRecord(tenant_id="a")
    record.transition(SessionState.INITIALIZING)
    record.show_scan_code("qr-image")
    record.mark_connected(phone)
    return record


class TestTransitions:
    def test_initial_state(self):
        record = SessionRecord(tenant_id="a")
        assert record.state is SessionState.UNINITIALIZED
        assert record.ever_completed_handshake is False
        assert not record.is_active

    def test_connected_clears_scan_code(self):
        record = connected_record()
        assert record.state is SessionState.CONNECTED
        assert record.last_qr_image is None
        assert record.has_qr is False
        assert record.phone == "555"
        assert record.ever_completed_handshake is True

    def test_scan_code_kept_while_awaiting(self):
        record = SessionRecord(tenant_id="a")
        record.transition(SessionState.INITIALIZING)
        record.show_scan_code("one")
        record.show_scan_code("two")
        assert record.last_qr_image == "two"
        assert record.has_qr

    def test_disconnect_clears_phone_keeps_handshake_flag(self):
        record = connected_record()
        record.transition(SessionState.DISCONNECTED)
        assert record.phone is None
        assert record.ever_completed_handshake is True
        assert not record.is_active

    def test_invalid_transition_raises(self):
        record = SessionRecord(tenant_id="a")
        with pytest.raises(InvalidTransitionError) as exc:
            record.transition(SessionState.CONNECTED)
        assert exc.value.current is SessionState.UNINITIALIZED
        assert exc.value.target is SessionState.CONNECTED
        assert record.state is SessionState.UNINITIALIZED

    def test_scan_code_rejected_when_connected(self):
        record = connected_record()
        with pytest.raises(InvalidTransitionError):
            record.show_scan_code("late")
        assert record.last_qr_image is None

    def test_failed_can_restart(self):
        record = SessionRecord(tenant_id="a")
        record.transition(SessionState.INITIALIZING)
        record.transition(SessionState.FAILED)
        assert record.can_transition(SessionState.INITIALIZING)
        assert not record.is_active

    @pytest.mark.parametrize("state", [
        SessionState.INITIALIZING,
        SessionState.AWAITING_SCAN,
        SessionState.CONNECTED,
        SessionState.DISCONNECTING,
    ])
    def test_active_states(self, state):
        record = SessionRecord(tenant_id="a", state=state)
        assert record.is_active


class TestSerialization:
    def test_record_to_dict(self):
        data = connected_record().to_dict()
        assert data["tenantId"] == "a"
        assert data["state"] == "connected"
        assert data["hasQR"] is False
        assert data["everCompletedHandshake"] is True

    def test_default_status(self):
        assert SessionStatus().to_dict() == {
            "status": "disconnected",
            "phone": None,
            "hasQR": False,
            "isActive": False,
            "isInitializing": False,
        }
