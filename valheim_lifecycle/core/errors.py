"""Error taxonomy for lifecycle tasks.

Per-task errors are caught at the task boundary and turned into results;
only ``FatalStartupError`` is allowed to end the orchestrator.
"""


class LifecycleError(Exception):
    """Base class for orchestrator errors."""

    code = "error"


class ConfigError(LifecycleError, ValueError):
    """Configuration could not be parsed."""

    code = "config"


class InvalidTransition(LifecycleError):
    """A lifecycle state change that the state machine does not allow."""

    code = "invalid_transition"


class UpdateTimeoutError(LifecycleError):
    """The retrieval tool exceeded its deadline and was terminated."""

    code = "timeout"


class SubprocessFailure(LifecycleError):
    """An external command returned a non-zero status."""

    code = "subprocess_failure"

    def __init__(self, message, returncode=None):
        super().__init__(message)
        self.returncode = returncode


class NoWorldDataError(LifecycleError):
    """The world's primary data file does not exist."""

    code = "no_world_data"


class RetentionIOFailure(LifecycleError):
    """An evicted backup archive could not be deleted."""

    code = "retention_io_failure"

    def __init__(self, path, reason):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class TaskCancelled(LifecycleError):
    """A task observed the shutdown cancellation signal."""

    code = "cancelled"


class FatalStartupError(LifecycleError):
    """No usable server installation exists after the startup update."""

    code = "fatal"
