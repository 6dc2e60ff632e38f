"""Server binary installs and updates through SteamCMD with a hard deadline."""

import os
from pathlib import Path
import shlex
import signal
import subprocess
import threading
import time

from valheim_lifecycle.core.errors import SubprocessFailure, UpdateTimeoutError
from valheim_lifecycle.state import (
    OUTCOME_BUSY,
    OUTCOME_CANCELLED,
    OUTCOME_DEFERRED,
    OUTCOME_FAILED,
    OUTCOME_OK,
    OUTCOME_TIMEOUT,
    UpdateResult,
)


def build_steamcmd_command(settings):
    """Return the SteamCMD argv for an anonymous ``app_update`` into SERVER_DIR."""
    return [
        str(settings.steamcmd_path),
        "+force_install_dir",
        str(settings.server_dir),
        "+login",
        "anonymous",
        "+app_update",
        str(settings.steam_app_id),
        *shlex.split(settings.steamcmd_args or ""),
        "+quit",
    ]


def _signal_group(proc, sig):
    """Signal the tool's whole session; SteamCMD re-executes itself in a child."""
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
    except OSError:
        proc.send_signal(sig)


class UpdateManager:
    """Runs the retrieval tool; at most one run per process at a time."""

    def __init__(
        self,
        command,
        binary_path,
        idle_detector,
        log_action,
        log_exception,
        *,
        token=None,
        token_wait=0.0,
        popen=subprocess.Popen,
        poll_interval=0.5,
        kill_grace=10.0,
        output_file=None,
        clock=time.monotonic,
    ):
        self.command = list(command)
        self.binary_path = Path(binary_path)
        self.idle_detector = idle_detector
        self.log_action = log_action
        self.log_exception = log_exception
        self.token = token
        self.token_wait = token_wait
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace
        self.output_file = output_file
        self._popen = popen
        self._clock = clock
        self._run_lock = threading.Lock()

    def has_working_install(self):
        return self.binary_path.is_file()

    def run_update(self, force=False, only_if_idle=False, timeout=900.0, cancel_event=None):
        """Run one update and return an ``UpdateResult``; never raises."""
        if not self._run_lock.acquire(blocking=False):
            return UpdateResult(started=False, outcome=OUTCOME_BUSY, message="update already in progress")
        try:
            if not force and only_if_idle:
                idle, error = self.idle_detector.is_idle()
                if not idle:
                    detail = error or "players connected"
                    self.log_action("update-deferred", detail)
                    return UpdateResult(started=False, outcome=OUTCOME_DEFERRED, message=detail)
            if self.token is None:
                return self._run_process(timeout, cancel_event)
            with self.token.held("update", timeout=self.token_wait, cancel_event=cancel_event) as acquired:
                if not acquired:
                    if cancel_event is not None and cancel_event.is_set():
                        return UpdateResult(started=False, outcome=OUTCOME_CANCELLED, message="cancelled while waiting for task token")
                    holder = self.token.holder or "another task"
                    return UpdateResult(started=False, outcome=OUTCOME_BUSY, message=f"task token held by {holder}")
                return self._run_process(timeout, cancel_event)
        except Exception as exc:
            self.log_exception("run_update", exc)
            return UpdateResult(started=False, outcome=OUTCOME_FAILED, message=str(exc))
        finally:
            self._run_lock.release()

    def _spawn(self):
        out = None
        if self.output_file is not None:
            Path(self.output_file).parent.mkdir(parents=True, exist_ok=True)
            out = open(self.output_file, "ab")
        try:
            return self._popen(
                self.command,
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=subprocess.STDOUT if out is not None else None,
                start_new_session=True,
            )
        finally:
            if out is not None:
                out.close()

    def _stop_process(self, proc):
        """SIGTERM the tool, then SIGKILL after ``kill_grace`` seconds."""
        _signal_group(proc, signal.SIGTERM)
        try:
            return proc.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            _signal_group(proc, signal.SIGKILL)
            return proc.wait()

    def _run_process(self, timeout, cancel_event):
        self.log_action("update-start", shlex.join(self.command))
        try:
            proc = self._spawn()
        except OSError as exc:
            message = f"could not launch {self.command[0]}: {exc}"
            self.log_action("update-end", error=message)
            return UpdateResult(started=False, outcome=OUTCOME_FAILED, message=message)

        deadline = self._clock() + max(0.0, float(timeout))
        while True:
            try:
                status = proc.wait(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                pass
            if cancel_event is not None and cancel_event.is_set():
                status = self._stop_process(proc)
                self.log_action("update-end", f"cancelled exit={status}")
                return UpdateResult(started=True, exit_status=status, outcome=OUTCOME_CANCELLED, message="update cancelled")
            if self._clock() >= deadline:
                status = self._stop_process(proc)
                error = UpdateTimeoutError(f"update exceeded {timeout:g}s and was terminated")
                self.log_action("update-timeout", f"exit={status}", error=str(error))
                return UpdateResult(
                    started=True,
                    timed_out=True,
                    exit_status=status,
                    outcome=OUTCOME_TIMEOUT,
                    message=str(error),
                )

        if status != 0:
            error = SubprocessFailure(f"steamcmd exited with status {status}", returncode=status)
            self.log_action("update-end", f"exit={status}", error=str(error))
            return UpdateResult(started=True, exit_status=status, outcome=OUTCOME_FAILED, message=str(error))
        self.log_action("update-end", "exit=0")
        return UpdateResult(started=True, exit_status=0, outcome=OUTCOME_OK)
