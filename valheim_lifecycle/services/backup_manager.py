"""World backup runs: idle gate, archive write, publish and retention sweep."""

from datetime import datetime, timezone
import threading
from pathlib import Path

from valheim_lifecycle.core.errors import NoWorldDataError, TaskCancelled
from valheim_lifecycle.core.filesystem_utils import format_file_size
from valheim_lifecycle.services.backup_archive import (
    discard_stale_partials,
    new_partial_path,
    parse_archive_name,
    primary_world_file,
    publish_archive,
    world_files,
    write_archive,
)
from valheim_lifecycle.services.backup_retention import sweep_backups
from valheim_lifecycle.state import (
    OUTCOME_BUSY,
    OUTCOME_CANCELLED,
    OUTCOME_DEFERRED,
    OUTCOME_FAILED,
    OUTCOME_NO_WORLD_DATA,
    OUTCOME_OK,
    BackupResult,
    RetentionPolicy,
)


def _utc_now():
    return datetime.now(timezone.utc)


class BackupManager:
    """Creates world archives in the backup directory and applies retention.

    ``token`` is the shared ``TaskToken``; it is held for the whole
    filesystem phase so an update never runs while world files are read.
    """

    def __init__(
        self,
        worlds_dir,
        world_name,
        backup_dir,
        idle_detector,
        log_action,
        log_exception,
        *,
        token=None,
        token_wait=0.0,
        policy=None,
        compress=True,
        now=_utc_now,
    ):
        self.worlds_dir = Path(worlds_dir)
        self.world_name = world_name
        self.backup_dir = Path(backup_dir)
        self.idle_detector = idle_detector
        self.log_action = log_action
        self.log_exception = log_exception
        self.token = token
        self.token_wait = token_wait
        self.policy = policy or RetentionPolicy()
        self.compress = compress
        self._now = now
        self._run_lock = threading.Lock()
        self._discard_partials()

    def _discard_partials(self):
        try:
            removed = discard_stale_partials(self.backup_dir)
        except OSError as exc:
            self.log_exception("backup-discard-partials", exc)
            return
        for path in removed:
            self.log_action("backup-partial-discarded", path.name)

    def run_backup(self, force=False, only_if_idle=False, cancel_event=None):
        """Run one backup; always returns a ``BackupResult``, never raises."""
        if not self._run_lock.acquire(blocking=False):
            return BackupResult(outcome=OUTCOME_BUSY, message="backup already in progress")
        try:
            if not force and only_if_idle:
                idle, error = self.idle_detector.is_idle()
                if not idle:
                    detail = error or "players connected"
                    self.log_action("backup-deferred", detail)
                    return BackupResult(outcome=OUTCOME_DEFERRED, message=detail)
            if self.token is None:
                return self._run_locked(cancel_event)
            with self.token.held("backup", timeout=self.token_wait, cancel_event=cancel_event) as acquired:
                if not acquired:
                    if cancel_event is not None and cancel_event.is_set():
                        return BackupResult(outcome=OUTCOME_CANCELLED, message="cancelled while waiting for task token")
                    holder = self.token.holder or "another task"
                    return BackupResult(outcome=OUTCOME_BUSY, message=f"task token held by {holder}")
                return self._run_locked(cancel_event)
        except Exception as exc:
            self.log_exception("run_backup", exc)
            return BackupResult(outcome=OUTCOME_FAILED, message=str(exc))
        finally:
            self._run_lock.release()

    def _run_locked(self, cancel_event):
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        primary = primary_world_file(self.worlds_dir, self.world_name)
        if not primary.is_file():
            error = NoWorldDataError(f"{primary} does not exist")
            self.log_action("backup-no-world-data", str(primary))
            sweep = self._sweep()
            return BackupResult(
                outcome=OUTCOME_NO_WORLD_DATA,
                evicted=tuple(sweep.evicted),
                retention_errors=tuple(sweep.errors),
                message=str(error),
            )

        created_at = self._now()
        partial = new_partial_path(self.backup_dir, self.world_name)
        try:
            write_archive(partial, world_files(self.worlds_dir, self.world_name), self.compress, cancel_event)
            final, _ = publish_archive(partial, self.backup_dir, self.world_name, created_at, self.compress)
        except TaskCancelled as exc:
            partial.unlink(missing_ok=True)
            self.log_action("backup-cancelled", self.world_name)
            return BackupResult(outcome=OUTCOME_CANCELLED, message=str(exc))
        except BaseException:
            partial.unlink(missing_ok=True)
            raise

        record = parse_archive_name(final)
        self.log_action("backup-created", f"{final.name} size={format_file_size(record.size_bytes)}")
        sweep = self._sweep()
        return BackupResult(
            outcome=OUTCOME_OK,
            record=record,
            evicted=tuple(sweep.evicted),
            retention_errors=tuple(sweep.errors),
        )

    def _sweep(self):
        return sweep_backups(self.backup_dir, self.policy, now=self._now(), log_action=self.log_action)
