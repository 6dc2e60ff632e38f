"""Lifecycle orchestrator: startup sequence, steady-state scheduling and shutdown."""

from contextlib import nullcontext
import signal
import threading

from valheim_lifecycle.core.access_lists import write_access_lists
from valheim_lifecycle.core.errors import FatalStartupError, LifecycleError
from valheim_lifecycle.services.backup_archive import list_backup_records
from valheim_lifecycle.services.scheduler import PeriodicScheduler
from valheim_lifecycle.services.task_dispatch import TaskDispatcher
from valheim_lifecycle.state import (
    OUTCOME_BUSY,
    OUTCOME_FAILED,
    OUTCOME_SKIPPED,
    TASK_BACKUP,
    TASK_UPDATE,
    BackupResult,
    LifecycleState,
    LifecycleStateMachine,
    UpdateResult,
)

TERMINATION_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)


class LifecycleOrchestrator:
    """Owns the lifecycle state and sequences every task against the server.

    Startup: updating -> starting -> running. The startup update is always
    forced and finishes before the server is started. A termination signal
    at any point leads to shutting_down -> stopped.
    """

    def __init__(
        self,
        settings,
        *,
        update_manager,
        backup_manager,
        supervisor,
        log_action,
        log_exception,
        token=None,
        state_machine=None,
        dispatcher=None,
        scheduler=None,
        control_api=None,
    ):
        self.settings = settings
        self.update_manager = update_manager
        self.backup_manager = backup_manager
        self.supervisor = supervisor
        self.log_action = log_action
        self.log_exception = log_exception
        self.token = token
        self.machine = state_machine or LifecycleStateMachine(log_action)
        self.dispatcher = dispatcher or TaskDispatcher(log_action, log_exception)
        self.scheduler = scheduler or PeriodicScheduler(
            settings.schedule_entries(),
            self.dispatch_entry,
            log_action,
            tick_seconds=settings.scheduler_tick_seconds,
            display_tz=settings.display_tz,
        )
        self.control_api = control_api
        self.shutdown_event = threading.Event()
        self.startup_update = None
        self._shutdown_lock = threading.Lock()
        self._shutdown_started = False

    @property
    def state(self):
        return self.machine.state

    # Signals

    def install_signal_handlers(self):
        for sig in TERMINATION_SIGNALS:
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, _frame):
        self.request_shutdown(signal.Signals(signum).name)

    def request_shutdown(self, reason="request"):
        """Begin shutdown; repeated requests are logged and ignored."""
        if self.shutdown_event.is_set():
            self.log_action("signal-received", f"{reason} ignored: shutdown already in progress")
            return
        # Flag first; a failing log write must not drop the request.
        self.shutdown_event.set()
        self.dispatcher.cancel_all()
        self.log_action("signal-received", reason)

    # Startup

    def _run_startup_update(self):
        if not self.settings.update_on_start:
            self.log_action("update-end", "skipped: UPDATE_ON_START=false")
            return UpdateResult(started=False, outcome=OUTCOME_SKIPPED, message="UPDATE_ON_START=false")
        result = self.dispatcher.run(
            TASK_UPDATE,
            lambda cancel_event: self.update_manager.run_update(
                force=True,
                only_if_idle=False,
                timeout=self.settings.update_timeout,
                cancel_event=cancel_event,
            ),
        )
        if result is None:
            return UpdateResult(started=False, outcome=OUTCOME_FAILED, message="startup update raised")
        return result

    def _fail_startup(self, message):
        if self.machine.can_transition(LifecycleState.STOPPED):
            self.machine.transition(LifecycleState.STOPPED, reason="fatal")
        else:
            self.machine.transition(LifecycleState.SHUTTING_DOWN, reason="fatal")
            self.machine.transition(LifecycleState.STOPPED, reason="fatal")
        self.log_action("error", error=f"fatal: {message}")
        raise FatalStartupError(message)

    def startup(self):
        """Update, start and wait for readiness; returns early on a shutdown request."""
        self.machine.transition(LifecycleState.UPDATING)
        self.startup_update = self._run_startup_update()
        if self.shutdown_event.is_set():
            return
        if not self.startup_update.ok and not self.update_manager.has_working_install():
            self._fail_startup(
                f"startup update {self.startup_update.outcome} and no server binary at {self.update_manager.binary_path}"
            )

        self.machine.transition(LifecycleState.STARTING)
        try:
            write_access_lists(self.settings.config_dir, self.settings.access_lists, self.log_action)
        except OSError as exc:
            self.log_exception("write_access_lists", exc)
        try:
            self.supervisor.start()
        except LifecycleError as exc:
            self.log_exception("supervisor.start", exc)
            self._fail_startup(f"server did not start: {exc}")
        self.supervisor.wait_for_ready(self.settings.startup_timeout, cancel_event=self.dispatcher.cancel_event)

    # Running

    def dispatch_entry(self, entry):
        """Scheduler callback: hand a due entry to its worker thread."""
        if entry.kind == TASK_UPDATE:
            def task(cancel_event):
                return self.update_manager.run_update(
                    force=False,
                    only_if_idle=entry.only_if_idle,
                    timeout=self.settings.update_timeout,
                    cancel_event=cancel_event,
                )
        elif entry.kind == TASK_BACKUP:
            def task(cancel_event):
                return self.backup_manager.run_backup(
                    force=False,
                    only_if_idle=entry.only_if_idle,
                    cancel_event=cancel_event,
                )
        else:
            self.log_action("error", error=f"unknown schedule kind {entry.kind!r}")
            return False
        return self.dispatcher.submit(entry.kind, task)

    def trigger_backup(self, force=True):
        """Run a manual backup on the caller's thread (control API)."""
        if self.shutdown_event.is_set() or self.state in (LifecycleState.SHUTTING_DOWN, LifecycleState.STOPPED):
            return BackupResult(outcome=OUTCOME_BUSY, message="lifecycle is shutting down")
        result = self.dispatcher.run(
            TASK_BACKUP,
            lambda cancel_event: self.backup_manager.run_backup(force=force, only_if_idle=False, cancel_event=cancel_event),
        )
        if result is None:
            return BackupResult(outcome=OUTCOME_FAILED, message="backup raised")
        return result

    def _enter_running(self):
        self.machine.transition(LifecycleState.RUNNING)
        self.scheduler.start()
        if self.control_api is not None:
            try:
                self.control_api.start()
            except OSError as exc:
                self.log_exception("control_api.start", exc)

    # Shutdown

    def shutdown(self):
        """Stop scheduling, cancel tasks, stop the server, then reach ``stopped``."""
        with self._shutdown_lock:
            if self._shutdown_started:
                return
            self._shutdown_started = True
        if self.state == LifecycleState.STOPPED:
            return
        self.machine.transition(LifecycleState.SHUTTING_DOWN)
        self.scheduler.stop(timeout=self.settings.scheduler_tick_seconds + 1)
        self.dispatcher.close()
        self.dispatcher.cancel_all()
        grace = self.settings.task_grace_timeout
        if not self.dispatcher.join(grace):
            self.log_action("error", error=f"tasks still running after {grace:g}s: {', '.join(self.dispatcher.in_flight())}")

        exited = False
        guard = self.token.held("shutdown", timeout=grace) if self.token is not None else nullcontext(True)
        with guard as acquired:
            if not acquired:
                self.log_action("missed-run", "kind=shutdown", error=f"task token held by {self.token.holder or 'another task'}")
            try:
                exited = self.supervisor.stop(signal.SIGINT, self.settings.shutdown_timeout)
            except LifecycleError as exc:
                self.log_exception("supervisor.stop", exc)

        if self.settings.backups_on_shutdown and exited:
            self.backup_manager.run_backup(force=True, only_if_idle=False, cancel_event=threading.Event())

        if self.control_api is not None:
            self.control_api.stop()
        self.machine.transition(LifecycleState.STOPPED)

    def run(self):
        """Run the whole lifecycle and return the process exit code."""
        try:
            self.startup()
        except FatalStartupError:
            return 1
        if not self.shutdown_event.is_set():
            self._enter_running()
            self.shutdown_event.wait()
        self.shutdown()
        return 0

    # Introspection

    def is_healthy(self):
        """True only while running with a live server process."""
        if self.state != LifecycleState.RUNNING:
            return False
        try:
            return bool(self.supervisor.is_running())
        except LifecycleError:
            return False

    def status_snapshot(self):
        try:
            server_running = self.supervisor.is_running()
        except LifecycleError:
            server_running = None
        next_runs = {kind: moment.isoformat() for kind, moment in self.scheduler.next_fire_times().items()}
        startup = self.startup_update
        return {
            "state": self.state.value,
            "server_running": server_running,
            "startup_update": startup.outcome if startup is not None else None,
            "in_flight": self.dispatcher.in_flight(),
            "last_results": self.dispatcher.last_results(),
            "next_runs": next_runs,
            "backup_count": len(list_backup_records(self.settings.backups_directory)),
        }
