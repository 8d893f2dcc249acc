"""Process-wide pause/stop signals for running pipelines.

Signals live in process memory only. They are NOT persisted, so a signal
raised before a restart is lost; crash recovery reclassifies such runs as
interrupted instead of honoring the lost signal.
"""

import threading


class ControlSignalRegistry:
    """Pause and stop requests keyed by run id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pause: set[str] = set()
        self._stop: set[str] = set()

    def request_pause(self, run_id: str) -> None:
        with self._lock:
            self._pause.add(run_id)

    def request_resume(self, run_id: str) -> None:
        """Withdraw a pause that has not been honored yet."""
        with self._lock:
            self._pause.discard(run_id)

    def request_stop(self, run_id: str) -> None:
        with self._lock:
            self._stop.add(run_id)

    def is_pause_requested(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._pause

    def is_stop_requested(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._stop

    def clear_control_requests(self, run_id: str) -> None:
        with self._lock:
            self._pause.discard(run_id)
            self._stop.discard(run_id)

    def clear_all(self) -> None:
        with self._lock:
            self._pause.clear()
            self._stop.clear()


control_signals = ControlSignalRegistry()
