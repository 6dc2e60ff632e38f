"""Periodic scheduler: evaluates cron entries on a fixed tick and dispatches due tasks."""

from datetime import datetime
import threading
from zoneinfo import ZoneInfo

SCHEDULER_GAP_MIN_SECONDS = 75


class PeriodicScheduler:
    """Fires each ``ScheduleEntry`` at most once per cron match.

    Next fire times are computed from the moment the scheduler starts, so
    nothing fires retroactively for time spent updating or starting. Firings
    missed during a stall (suspend, clock jump) coalesce into one dispatch.
    """

    def __init__(self, entries, dispatch, log_action, tick_seconds=5.0, display_tz=None, now=None):
        self.entries = list(entries)
        self.tick_seconds = float(tick_seconds)
        self._dispatch = dispatch
        self._log_action = log_action
        tz = display_tz or ZoneInfo("UTC")
        self._now = now or (lambda: datetime.now(tz))
        self._next_fire = {}
        self._last_tick = None
        self._stop_event = threading.Event()
        self._thread = None

    def next_fire_times(self):
        return {self.entries[idx].kind: moment for idx, moment in self._next_fire.items()}

    def prime(self, now=None):
        now = now or self._now()
        self._next_fire = {idx: entry.schedule.next_after(now) for idx, entry in enumerate(self.entries)}
        self._last_tick = now

    def tick(self, now=None):
        """Dispatch every entry whose next fire time has passed; return them."""
        now = now or self._now()
        if not self._next_fire and self.entries:
            self.prime(now)
            return []
        if self._last_tick is not None:
            gap = (now - self._last_tick).total_seconds()
            if gap > max(SCHEDULER_GAP_MIN_SECONDS, self.tick_seconds * 3):
                self._log_action("missed-run", f"scheduler gap of {int(gap)}s")
        self._last_tick = now

        fired = []
        for idx, entry in enumerate(self.entries):
            if self._stop_event.is_set():
                break
            due_at = self._next_fire.get(idx)
            if due_at is None or due_at > now:
                continue
            self._next_fire[idx] = entry.schedule.next_after(now)
            self._log_action(
                "schedule-dispatch",
                f"kind={entry.kind} cron='{entry.cron_expression}' only_if_idle={str(entry.only_if_idle).lower()}",
            )
            self._dispatch(entry)
            fired.append(entry)
        return fired

    def _loop(self):
        while not self._stop_event.wait(self.tick_seconds):
            try:
                self.tick()
            except Exception as exc:
                self._log_action("error", error=f"scheduler tick failed: {type(exc).__name__}: {exc}")

    def start(self):
        if self._thread is not None:
            return
        self.prime()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="lifecycle-scheduler")
        self._thread.start()

    def stop(self, timeout=None):
        """Stop ticking; no dispatch happens after this returns."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()
