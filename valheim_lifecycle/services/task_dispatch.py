"""Worker threads for scheduled and API-triggered tasks."""

from datetime import datetime, timezone
import threading
import time

from valheim_lifecycle.state import OUTCOME_BUSY, OUTCOME_FAILED


class TaskDispatcher:
    """One worker thread per task kind; all share one cancellation event."""

    def __init__(self, log_action, log_exception):
        self.cancel_event = threading.Event()
        self._log_action = log_action
        self._log_exception = log_exception
        self._lock = threading.Lock()
        self._workers = {}
        self._last_results = {}
        self._closed = False

    def submit(self, kind, func):
        """Start ``func(cancel_event)`` in the background.

        Returns False without running anything when a task of the same kind
        is still in flight or the dispatcher is closed.
        """
        with self._lock:
            if self._closed:
                return False
            worker = self._workers.get(kind)
            if worker is not None and worker.is_alive():
                self._log_action("missed-run", f"kind={kind} previous run still in progress")
                return False
            worker = threading.Thread(target=self._run, args=(kind, func), daemon=True, name=f"lifecycle-{kind}")
            self._workers[kind] = worker
            worker.start()
            return True

    def run(self, kind, func):
        """Run ``func`` on the calling thread with the same bookkeeping as ``submit``."""
        return self._run(kind, func)

    def _run(self, kind, func):
        try:
            result = func(self.cancel_event)
        except Exception as exc:
            self._log_exception(f"task:{kind}", exc)
            self._record(kind, OUTCOME_FAILED, str(exc))
            return None
        outcome = getattr(result, "outcome", None)
        message = getattr(result, "message", "")
        if outcome == OUTCOME_BUSY:
            self._log_action("missed-run", f"kind={kind}", error=message or "busy")
        self._record(kind, outcome, message)
        return result

    def _record(self, kind, outcome, message):
        with self._lock:
            self._last_results[kind] = {
                "outcome": outcome,
                "message": message or "",
                "finished_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            }

    def last_results(self):
        with self._lock:
            return {kind: dict(item) for kind, item in self._last_results.items()}

    def in_flight(self):
        with self._lock:
            return sorted(kind for kind, worker in self._workers.items() if worker.is_alive())

    def close(self):
        """Refuse further submissions."""
        with self._lock:
            self._closed = True

    def cancel_all(self):
        self.cancel_event.set()

    def join(self, timeout=None):
        """Wait for in-flight workers; True when all of them finished in time."""
        with self._lock:
            workers = list(self._workers.values())
        deadline = None if timeout is None else time.monotonic() + max(0.0, float(timeout))
        for worker in workers:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            worker.join(remaining)
        return not any(worker.is_alive() for worker in workers)
