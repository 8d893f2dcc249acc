"""Tests for the in-memory pause/stop signal registry."""

from asip.pipeline.control import ControlSignalRegistry


class TestControlSignalRegistry:
    def test_signals_are_per_run(self):
        signals = ControlSignalRegistry()
        signals.request_pause("a")
        signals.request_stop("b")

        assert signals.is_pause_requested("a")
        assert not signals.is_pause_requested("b")
        assert signals.is_stop_requested("b")
        assert not signals.is_stop_requested("a")

    def test_resume_withdraws_pending_pause(self):
        signals = ControlSignalRegistry()
        signals.request_pause("a")
        signals.request_resume("a")
        assert not signals.is_pause_requested("a")

    def test_clear_control_requests(self):
        signals = ControlSignalRegistry()
        signals.request_pause("a")
        signals.request_stop("a")
        signals.request_stop("b")

        signals.clear_control_requests("a")

        assert not signals.is_pause_requested("a")
        assert not signals.is_stop_requested("a")
        assert signals.is_stop_requested("b")

    def test_clear_all(self):
        signals = ControlSignalRegistry()
        signals.request_pause("a")
        signals.request_stop("b")
        signals.clear_all()
        assert not signals.is_pause_requested("a")
        assert not signals.is_stop_requested("b")

    def test_clearing_unknown_run_is_harmless(self):
        ControlSignalRegistry().clear_control_requests("never-seen")
