"""Typed lifecycle state and task result containers."""
from dataclasses import dataclass, field
from enum import Enum
import threading
from typing import Any, Optional

from valheim_lifecycle.core.errors import InvalidTransition

OUTCOME_OK = "ok"
OUTCOME_DEFERRED = "deferred"
OUTCOME_BUSY = "busy"
OUTCOME_TIMEOUT = "timeout"
OUTCOME_FAILED = "failed"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_SKIPPED = "skipped"
OUTCOME_NO_WORLD_DATA = "no_world_data"

TASK_UPDATE = "update"
TASK_BACKUP = "backup"


class LifecycleState(str, Enum):
    """Process-wide lifecycle phase of the managed server."""
    INITIALIZING = "initializing"
    UPDATING = "updating"
    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


_ALLOWED_TRANSITIONS = {
    LifecycleState.INITIALIZING: {LifecycleState.UPDATING, LifecycleState.SHUTTING_DOWN},
    LifecycleState.UPDATING: {LifecycleState.STARTING, LifecycleState.SHUTTING_DOWN, LifecycleState.STOPPED},
    LifecycleState.STARTING: {LifecycleState.RUNNING, LifecycleState.SHUTTING_DOWN},
    LifecycleState.RUNNING: {LifecycleState.SHUTTING_DOWN},
    LifecycleState.SHUTTING_DOWN: {LifecycleState.STOPPED},
    LifecycleState.STOPPED: set(),
}


class LifecycleStateMachine:
    """Single owner of the lifecycle state; writes are serialized."""

    def __init__(self, log_action=None):
        self._lock = threading.Lock()
        self._state = LifecycleState.INITIALIZING
        self._changed = threading.Condition(self._lock)
        self._log_action = log_action

    @property
    def state(self):
        with self._lock:
            return self._state

    def can_transition(self, target):
        with self._lock:
            return target in _ALLOWED_TRANSITIONS[self._state]

    def transition(self, target, reason=""):
        """Move to ``target`` or raise ``InvalidTransition``."""
        target = LifecycleState(target)
        with self._lock:
            current = self._state
            if target not in _ALLOWED_TRANSITIONS[current]:
                raise InvalidTransition(f"{current.value} -> {target.value}")
            self._state = target
            self._changed.notify_all()
        if self._log_action is not None:
            detail = f"{current.value} -> {target.value}"
            if reason:
                detail = f"{detail} reason={reason}"
            self._log_action("lifecycle-state", detail)
        return current

    def wait_for(self, target, timeout=None):
        """Block until the state equals ``target``; return whether it did."""
        target = LifecycleState(target)
        with self._changed:
            return self._changed.wait_for(lambda: self._state == target, timeout=timeout)


@dataclass(frozen=True)
class ScheduleEntry:
    """One periodic task built from configuration at startup."""
    kind: str
    cron_expression: str
    only_if_idle: bool
    schedule: Any = field(compare=False, repr=False, default=None)


@dataclass(frozen=True)
class RetentionPolicy:
    """Age/count bounds for backup retention; 0 disables a bound."""
    max_age_days: float = 0
    max_count: int = 0


@dataclass(frozen=True)
class BackupRecord:
    """One backup archive, derived from its filename in the backup directory."""
    id: str
    path: Any
    created_at: Any
    size_bytes: int
    world_name: str
    sequence: int = 0

    @property
    def sort_key(self):
        return (self.created_at, self.sequence)


@dataclass
class RetentionSweep:
    """Outcome of one retention pass."""
    evicted: list = field(default_factory=list)
    errors: list = field(default_factory=list)


@dataclass(frozen=True)
class UpdateResult:
    """Result of one Update Manager invocation; never persisted."""
    started: bool
    timed_out: bool = False
    exit_status: Optional[int] = None
    outcome: str = OUTCOME_OK
    message: str = ""

    @property
    def ok(self):
        return self.outcome == OUTCOME_OK


@dataclass(frozen=True)
class BackupResult:
    """Result of one Backup Manager invocation."""
    outcome: str
    record: Optional[BackupRecord] = None
    evicted: tuple = ()
    retention_errors: tuple = ()
    message: str = ""

    @property
    def ok(self):
        return self.outcome == OUTCOME_OK
