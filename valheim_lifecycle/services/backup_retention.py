"""Backup retention: age rule first, then count rule, oldest-first."""

from datetime import datetime, timedelta, timezone

from valheim_lifecycle.core.errors import RetentionIOFailure
from valheim_lifecycle.services.backup_archive import list_backup_records
from valheim_lifecycle.state import RetentionSweep


def select_evictions(records, policy, now=None):
    """Return the records ``policy`` evicts, oldest first.

    Records older than ``max_age_days`` go first; the survivors are then
    trimmed to the newest ``max_count``. A bound of 0 is unlimited.
    """
    now = now or datetime.now(timezone.utc)
    ordered = sorted(records, key=lambda item: item.sort_key)
    evict = []
    keep = []
    if policy.max_age_days and policy.max_age_days > 0:
        cutoff = now - timedelta(days=float(policy.max_age_days))
        for record in ordered:
            if record.created_at < cutoff:
                evict.append(record)
            else:
                keep.append(record)
    else:
        keep = list(ordered)

    if policy.max_count and policy.max_count > 0 and len(keep) > policy.max_count:
        surplus = len(keep) - policy.max_count
        evict.extend(keep[:surplus])
    return sorted(evict, key=lambda item: item.sort_key)


def _delete_record(record):
    try:
        record.path.unlink()
    except FileNotFoundError:
        # Already gone counts as removed.
        return None
    except OSError as exc:
        return RetentionIOFailure(record.path, exc.strerror or str(exc))
    return None


def sweep_backups(backup_dir, policy, now=None, log_action=None):
    """Apply ``policy`` to the archives in ``backup_dir``.

    A record is only reported as evicted when its file was unlinked; a
    failed unlink keeps it in the listing for the next sweep.
    """
    sweep = RetentionSweep()
    records = list_backup_records(backup_dir)
    for record in select_evictions(records, policy, now=now):
        failure = _delete_record(record)
        if failure is not None:
            sweep.errors.append(failure)
            if log_action is not None:
                log_action("retention-io-failure", record.path.name, error=failure.reason)
            continue
        sweep.evicted.append(record)
        if log_action is not None:
            log_action("backup-evicted", f"{record.path.name} created={record.created_at.isoformat()}")
    return sweep
