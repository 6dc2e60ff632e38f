"""Adapters that start, signal and observe the game server process."""

import os
import re
import shlex
import signal
import subprocess
from pathlib import Path

from valheim_lifecycle.core.errors import SubprocessFailure
from valheim_lifecycle.core.filesystem_utils import read_text_from_offset, safe_file_size
from valheim_lifecycle.core.polling import poll_until

SERVER_STEAM_APP_ID = "892970"
_RUNNING_STATES = {"RUNNING", "STARTING", "STOPPING", "BACKOFF"}
_KILL_SETTLE_SECONDS = 10.0


class LogMarkerSource:
    """Readiness indicator: a regex seen in log text written after ``mark()``."""

    def __init__(self, log_file, marker):
        self.log_file = Path(log_file)
        self.pattern = re.compile(marker)
        self._offset = 0
        self._tail = ""

    def mark(self):
        self._offset = safe_file_size(self.log_file)
        self._tail = ""

    def is_ready(self):
        text, self._offset = read_text_from_offset(self.log_file, self._offset)
        if not text:
            return False
        buffer = self._tail + text
        if self.pattern.search(buffer):
            return True
        # Keep an unterminated last line so a marker split across reads still matches.
        self._tail = buffer.rsplit("\n", 1)[-1][-4096:]
        return False


class ProcessSupervisor:
    """Shared stop and readiness logic; subclasses provide process control."""

    def __init__(self, log_action, ready_source=None, poll_interval=1.0):
        self.log_action = log_action
        self.ready_source = ready_source
        self.poll_interval = poll_interval

    def start(self):
        raise NotImplementedError

    def is_running(self):
        raise NotImplementedError

    def send_signal(self, sig):
        raise NotImplementedError

    def kill(self):
        self.send_signal(signal.SIGKILL)

    def _mark_ready_source(self):
        if self.ready_source is not None:
            self.ready_source.mark()

    def wait_for_ready(self, timeout, cancel_event=None):
        """Wait for the readiness marker; a timeout is reported, not raised."""
        if self.ready_source is None:
            check = self.is_running
        else:
            check = self.ready_source.is_ready
        ready = poll_until(check, timeout, interval=self.poll_interval, cancel_event=cancel_event)
        if ready:
            self.log_action("server-ready")
        elif cancel_event is None or not cancel_event.is_set():
            self.log_action("server-ready-timeout", f"no readiness marker within {timeout:g}s")
        return ready

    def stop(self, sig=signal.SIGINT, timeout=120.0):
        """Signal the server and wait for exit; escalate to a kill after ``timeout``.

        Returns True when the server exited on its own.
        """
        if not self.is_running():
            return True
        self.log_action("server-stop", f"signal={signal.Signals(sig).name} timeout={timeout:g}s")
        self.send_signal(sig)
        if poll_until(lambda: not self.is_running(), timeout, interval=self.poll_interval):
            return True
        self.log_action("server-kill", f"still running after {timeout:g}s")
        self.kill()
        poll_until(lambda: not self.is_running(), _KILL_SETTLE_SECONDS, interval=self.poll_interval)
        return False


class SupervisorctlSupervisor(ProcessSupervisor):
    """Controls a supervisord program through ``supervisorctl``."""

    def __init__(
        self,
        program,
        log_action,
        ready_source=None,
        poll_interval=1.0,
        supervisorctl="supervisorctl",
        runner=subprocess.run,
        command_timeout=30,
    ):
        super().__init__(log_action, ready_source, poll_interval)
        self.program = program
        self.supervisorctl = supervisorctl
        self.command_timeout = command_timeout
        self._runner = runner

    def _ctl(self, *args, timeout=None):
        try:
            return self._runner(
                [self.supervisorctl, *args],
                capture_output=True,
                text=True,
                timeout=self.command_timeout if timeout is None else timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise SubprocessFailure(f"supervisorctl {' '.join(args)}: {exc}") from exc

    def status(self):
        """Return the supervisord state name of the program (``UNKNOWN`` if unparseable)."""
        result = self._ctl("status", self.program)
        for line in (result.stdout or "").splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[0] == self.program:
                return parts[1].upper()
        return "UNKNOWN"

    def start(self):
        self._mark_ready_source()
        result = self._ctl("start", self.program)
        output = f"{result.stdout or ''} {result.stderr or ''}".strip()
        if result.returncode != 0 and "already started" not in output:
            raise SubprocessFailure(f"supervisorctl start {self.program}: {output}", returncode=result.returncode)
        self.log_action("server-start", f"program={self.program}")

    def is_running(self):
        return self.status() in _RUNNING_STATES

    def send_signal(self, sig):
        name = signal.Signals(sig).name
        result = self._ctl("signal", name, self.program)
        if result.returncode != 0:
            output = f"{result.stdout or ''} {result.stderr or ''}".strip()
            raise SubprocessFailure(f"supervisorctl signal {name} {self.program}: {output}", returncode=result.returncode)

    def stop(self, sig=signal.SIGINT, timeout=120.0):
        """Stop through ``supervisorctl stop`` so an autorestart program stays down.

        supervisord delivers the program's ``stopsignal`` (configure ``INT``) and
        kills after ``stopwaitsecs``. ``sig`` is only logged here. If supervisorctl
        itself has not returned after ``timeout`` the program is killed.
        """
        if not self.is_running():
            return True
        self.log_action("server-stop", f"program={self.program} signal={signal.Signals(sig).name} timeout={timeout:g}s")
        try:
            result = self._ctl("stop", self.program, timeout=timeout)
        except SubprocessFailure as exc:
            self.log_action("server-kill", error=str(exc))
            self.kill()
            poll_until(lambda: not self.is_running(), _KILL_SETTLE_SECONDS, interval=self.poll_interval)
            return False
        if result.returncode != 0 and self.is_running():
            output = f"{result.stdout or ''} {result.stderr or ''}".strip()
            raise SubprocessFailure(f"supervisorctl stop {self.program}: {output}", returncode=result.returncode)
        return True


class DirectProcessSupervisor(ProcessSupervisor):
    """Spawns the server itself in its own session, output appended to a log file."""

    def __init__(
        self,
        command,
        log_file,
        log_action,
        ready_source=None,
        poll_interval=1.0,
        env=None,
        cwd=None,
        popen=subprocess.Popen,
    ):
        super().__init__(log_action, ready_source, poll_interval)
        self.command = list(command)
        self.log_file = Path(log_file)
        self.env = env
        self.cwd = cwd
        self._popen = popen
        self._proc = None

    @property
    def pid(self):
        return self._proc.pid if self._proc is not None else None

    def start(self):
        if self.is_running():
            return
        self._mark_ready_source()
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        with self.log_file.open("ab") as out:
            try:
                self._proc = self._popen(
                    self.command,
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=subprocess.STDOUT,
                    cwd=self.cwd,
                    env=self.env,
                    start_new_session=True,
                )
            except OSError as exc:
                raise SubprocessFailure(f"could not launch {self.command[0]}: {exc}") from exc
        self.log_action("server-start", f"pid={self._proc.pid}")

    def is_running(self):
        return self._proc is not None and self._proc.poll() is None

    def send_signal(self, sig):
        if self.is_running():
            self._proc.send_signal(sig)


def build_server_command(settings):
    """Return the dedicated server argv built from settings."""
    command = [
        str(settings.server_binary),
        "-nographics",
        "-batchmode",
        "-name",
        settings.server_name,
        "-port",
        str(settings.server_port),
        "-world",
        settings.world_name,
        "-public",
        "1" if settings.server_public else "0",
        "-savedir",
        str(settings.config_dir),
    ]
    if settings.server_pass:
        command.extend(["-password", settings.server_pass])
    if settings.crossplay:
        command.append("-crossplay")
    command.extend(shlex.split(settings.server_args or ""))
    return command


def build_server_env(settings, base_env=None):
    env = dict(os.environ if base_env is None else base_env)
    linux64 = str(settings.server_dir / "linux64")
    existing = env.get("LD_LIBRARY_PATH", "")
    env["LD_LIBRARY_PATH"] = f"{linux64}:{existing}" if existing else linux64
    env["SteamAppId"] = SERVER_STEAM_APP_ID
    return env


def build_supervisor(settings, log_action):
    """Create the supervisor adapter selected by ``SUPERVISOR_MODE``."""
    ready_source = LogMarkerSource(settings.server_log_file, settings.ready_log_marker)
    if settings.supervisor_mode == "direct":
        return DirectProcessSupervisor(
            build_server_command(settings),
            settings.server_log_file,
            log_action,
            ready_source=ready_source,
            env=build_server_env(settings),
            cwd=str(settings.server_dir),
        )
    return SupervisorctlSupervisor(settings.supervisor_program, log_action, ready_source=ready_source)
