import signal
import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import Mock

from valheim_lifecycle.core.config import Settings
from valheim_lifecycle.core.errors import SubprocessFailure
from valheim_lifecycle.services.orchestrator import LifecycleOrchestrator
from valheim_lifecycle.state import (
    OUTCOME_BUSY,
    OUTCOME_CANCELLED,
    OUTCOME_FAILED,
    OUTCOME_OK,
    TASK_BACKUP,
    BackupResult,
    LifecycleState,
    ScheduleEntry,
    UpdateResult,
)


class FakeUpdateManager:
    def __init__(self, events, result=None, installed=True):
        self.events = events
        self.result = result or UpdateResult(started=True, exit_status=0)
        self.installed = installed
        self.binary_path = Path("/opt/valheim/server/valheim_server.x86_64")
        self.calls = []

    def run_update(self, force=False, only_if_idle=False, timeout=900.0, cancel_event=None):
        self.calls.append({"force": force, "only_if_idle": only_if_idle, "timeout": timeout})
        self.events.append("update")
        return self.result

    def has_working_install(self):
        return self.installed


class FakeSupervisor:
    def __init__(self, events, start_error=None):
        self.events = events
        self.running = False
        self.start_error = start_error
        self.stop_args = None

    def start(self):
        if self.start_error is not None:
            raise self.start_error
        self.events.append("start")
        self.running = True

    def wait_for_ready(self, timeout, cancel_event=None):
        self.events.append("ready")
        return True

    def is_running(self):
        return self.running

    def stop(self, sig=signal.SIGINT, timeout=120.0):
        self.events.append("stop")
        self.stop_args = (sig, timeout)
        self.running = False
        return True


class BlockingBackupManager:
    """Backup that runs until cancelled, then reports cancellation."""

    def __init__(self, events):
        self.events = events
        self.started = threading.Event()
        self.calls = []

    def run_backup(self, force=False, only_if_idle=False, cancel_event=None):
        self.calls.append({"force": force, "only_if_idle": only_if_idle})
        self.started.set()
        if cancel_event is not None:
            cancel_event.wait(5)
        self.events.append("backup-cancelled")
        return BackupResult(outcome=OUTCOME_CANCELLED, message="backup cancelled")


class LifecycleOrchestratorTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.settings = Settings(
            backups_enabled=False,
            backups_directory=root / "backups",
            config_dir=root / "config",
            worlds_dir=root / "worlds_local",
            task_grace_timeout=5,
            shutdown_timeout=7,
            scheduler_tick_seconds=0.1,
            startup_timeout=1,
        )
        self.events = []
        self.log_action = Mock()
        self.log_exception = Mock()

    def tearDown(self):
        self._tmp.cleanup()

    def _orchestrator(self, update_manager=None, supervisor=None, backup_manager=None):
        return LifecycleOrchestrator(
            self.settings,
            update_manager=update_manager or FakeUpdateManager(self.events),
            backup_manager=backup_manager or BlockingBackupManager(self.events),
            supervisor=supervisor or FakeSupervisor(self.events),
            log_action=self.log_action,
            log_exception=self.log_exception,
        )

    def _state_details(self):
        return [c.args[1] for c in self.log_action.call_args_list if c.args and c.args[0] == "lifecycle-state"]

    def test_startup_update_precedes_server_start(self):
        update_manager = FakeUpdateManager(self.events)
        orchestrator = self._orchestrator(update_manager=update_manager)
        orchestrator.startup()
        self.assertEqual(self.events, ["update", "start", "ready"])
        self.assertEqual(update_manager.calls[0]["force"], True)
        self.assertEqual(update_manager.calls[0]["only_if_idle"], False)
        self.assertEqual(orchestrator.state, LifecycleState.STARTING)

    def test_failed_update_with_existing_binary_still_starts(self):
        update_manager = FakeUpdateManager(
            self.events, result=UpdateResult(started=True, exit_status=8, outcome=OUTCOME_FAILED), installed=True
        )
        orchestrator = self._orchestrator(update_manager=update_manager)
        orchestrator.startup()
        self.assertEqual(self.events, ["update", "start", "ready"])

    def test_failed_update_without_binary_is_fatal(self):
        update_manager = FakeUpdateManager(
            self.events, result=UpdateResult(started=True, exit_status=8, outcome=OUTCOME_FAILED), installed=False
        )
        orchestrator = self._orchestrator(update_manager=update_manager)
        self.assertEqual(orchestrator.run(), 1)
        self.assertEqual(self.events, ["update"])
        self.assertEqual(orchestrator.state, LifecycleState.STOPPED)
        self.assertEqual(self._state_details(), ["initializing -> updating", "updating -> stopped reason=fatal"])

    def test_server_start_failure_is_fatal(self):
        supervisor = FakeSupervisor(self.events, start_error=SubprocessFailure("spawn error", returncode=7))
        orchestrator = self._orchestrator(supervisor=supervisor)
        self.assertEqual(orchestrator.run(), 1)
        self.assertEqual(orchestrator.state, LifecycleState.STOPPED)
        self.log_exception.assert_called_once()

    def test_update_on_start_disabled_still_enters_updating(self):
        self.settings.update_on_start = False
        update_manager = FakeUpdateManager(self.events)
        orchestrator = self._orchestrator(update_manager=update_manager)
        orchestrator.startup()
        self.assertEqual(update_manager.calls, [])
        self.assertEqual(orchestrator.startup_update.outcome, "skipped")
        self.assertIn("initializing -> updating", self._state_details())
        self.assertEqual(self.events, ["start", "ready"])

    def test_signal_during_backup_cancels_before_server_stop(self):
        backup_manager = BlockingBackupManager(self.events)
        supervisor = FakeSupervisor(self.events)
        orchestrator = self._orchestrator(supervisor=supervisor, backup_manager=backup_manager)
        runner = threading.Thread(target=orchestrator.run)
        runner.start()
        self.assertTrue(orchestrator.machine.wait_for(LifecycleState.RUNNING, timeout=5))

        entry = ScheduleEntry(TASK_BACKUP, "0 * * * *", False)
        self.assertTrue(orchestrator.dispatch_entry(entry))
        self.assertTrue(backup_manager.started.wait(5))

        orchestrator.request_shutdown("SIGTERM")
        orchestrator.request_shutdown("SIGTERM")
        runner.join(10)

        self.assertFalse(runner.is_alive())
        self.assertEqual(orchestrator.state, LifecycleState.STOPPED)
        self.assertLess(self.events.index("backup-cancelled"), self.events.index("stop"))
        self.assertEqual(supervisor.stop_args, (signal.SIGINT, 7))
        self.assertEqual(list(self.settings.backups_directory.glob("*.partial")), [])
        self.assertEqual(
            self._state_details()[-2:],
            ["running -> shutting_down", "shutting_down -> stopped"],
        )
        self.log_action.assert_any_call("signal-received", "SIGTERM ignored: shutdown already in progress")

    def test_signal_during_startup_skips_running(self):
        supervisor = FakeSupervisor(self.events)
        orchestrator = self._orchestrator(supervisor=supervisor)
        orchestrator.request_shutdown("SIGINT")
        self.assertEqual(orchestrator.run(), 0)
        self.assertEqual(orchestrator.state, LifecycleState.STOPPED)
        self.assertNotIn("start", self.events)
        self.assertNotIn("running", " ".join(self._state_details()))

    def test_post_exit_backup_when_enabled(self):
        self.settings.backups_on_shutdown = True
        backup_manager = Mock()
        backup_manager.run_backup.return_value = BackupResult(outcome=OUTCOME_OK)
        orchestrator = self._orchestrator(backup_manager=backup_manager)
        orchestrator.startup()
        orchestrator.shutdown()
        backup_manager.run_backup.assert_called_once()
        self.assertTrue(backup_manager.run_backup.call_args.kwargs["force"])
        self.assertEqual(self.events[-1], "stop")

    def test_manual_backup_rejected_while_shutting_down(self):
        orchestrator = self._orchestrator()
        orchestrator.request_shutdown("SIGTERM")
        self.assertEqual(orchestrator.trigger_backup().outcome, OUTCOME_BUSY)

    def test_status_snapshot(self):
        orchestrator = self._orchestrator()
        orchestrator.startup()
        snapshot = orchestrator.status_snapshot()
        self.assertEqual(snapshot["state"], "starting")
        self.assertTrue(snapshot["server_running"])
        self.assertEqual(snapshot["startup_update"], OUTCOME_OK)
        self.assertEqual(snapshot["backup_count"], 0)

    def test_access_lists_written_before_server_start(self):
        self.settings.adminlist_ids = "76561198000000001 76561198000000002"
        self.settings.permittedlist_ids = "76561198000000003"
        supervisor = FakeSupervisor(self.events)
        config_dir = self.settings.config_dir
        original_start = supervisor.start

        def start():
            self.events.append("adminlist" if (config_dir / "adminlist.txt").exists() else "no-adminlist")
            original_start()

        supervisor.start = start
        self._orchestrator(supervisor=supervisor).startup()
        self.assertEqual(self.events, ["update", "adminlist", "start", "ready"])
        admin_lines = (config_dir / "adminlist.txt").read_text(encoding="utf-8").splitlines()
        self.assertEqual(admin_lines[1:], ["76561198000000001", "76561198000000002"])
        self.assertTrue(admin_lines[0].startswith("//"))
        self.assertFalse((config_dir / "bannedlist.txt").exists())
        self.log_action.assert_any_call("access-list-written", "permittedlist.txt ids=1")

    def test_healthy_only_while_server_process_alive(self):
        supervisor = FakeSupervisor(self.events)
        orchestrator = self._orchestrator(supervisor=supervisor)
        orchestrator.startup()
        self.assertFalse(orchestrator.is_healthy())
        orchestrator.machine.transition(LifecycleState.RUNNING)
        self.assertTrue(orchestrator.is_healthy())
        supervisor.running = False
        self.assertFalse(orchestrator.is_healthy())

    def test_shutdown_request_survives_failing_log_write(self):
        def log_action(action, *args, **kwargs):
            if action == "signal-received":
                raise OSError("stdout busy")

        self.log_action.side_effect = log_action
        orchestrator = self._orchestrator()
        with self.assertRaises(OSError):
            orchestrator.request_shutdown("SIGTERM")
        self.assertTrue(orchestrator.shutdown_event.is_set())
        self.assertTrue(orchestrator.dispatcher.cancel_event.is_set())


if __name__ == "__main__":
    unittest.main()
