"""Backup archive naming, directory listing and atomic archive writes.

The backup directory is the only source of truth: every record is derived
from an archive filename, so state survives crashes without an index file.
"""

from datetime import datetime, timezone
import os
from pathlib import Path
import re
import tarfile
import uuid
import zipfile

from valheim_lifecycle.core.errors import TaskCancelled
from valheim_lifecycle.core.filesystem_utils import safe_file_size
from valheim_lifecycle.state import BackupRecord

STAMP_FORMAT = "%Y%m%d-%H%M%S"
ARCHIVE_MEMBER_DIR = "worlds_local"
_ARCHIVE_RE = re.compile(
    r"^valheim_(?P<world>.+)_(?P<stamp>\d{8}-\d{6})(?:_(?P<seq>\d+))?\.(?P<ext>zip|tar|tar\.gz)$"
)
_PARTIAL_RE = re.compile(r"^\.valheim_.*\.(?P<pid>\d+)\.[0-9a-f]+\.partial$")


def sanitize_name_component(value):
    """Sanitize a world name for use inside an archive filename."""
    safe = re.sub(r"[^A-Za-z0-9_.-]+", "_", str(value or "")).strip("_")
    return safe or "world"


def archive_name(world_name, created_at, sequence=0, compress=True):
    """Return the deterministic archive filename for one backup."""
    stamp = created_at.astimezone(timezone.utc).strftime(STAMP_FORMAT)
    suffix = f"_{sequence}" if sequence else ""
    ext = "zip" if compress else "tar.gz"
    return f"valheim_{sanitize_name_component(world_name)}_{stamp}{suffix}.{ext}"


def parse_archive_name(path):
    """Return a ``BackupRecord`` for an archive path, or None for foreign files."""
    path = Path(path)
    match = _ARCHIVE_RE.match(path.name)
    if not match:
        return None
    try:
        created_at = datetime.strptime(match.group("stamp"), STAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None
    sequence = int(match.group("seq") or 0)
    record_id = match.group("stamp") + (f"_{sequence}" if sequence else "")
    return BackupRecord(
        id=record_id,
        path=path,
        created_at=created_at,
        size_bytes=safe_file_size(path),
        world_name=match.group("world"),
        sequence=sequence,
    )


def list_backup_records(backup_dir, world_name=None):
    """List archives oldest-first, optionally only those of ``world_name``."""
    backup_dir = Path(backup_dir)
    records = []
    if not backup_dir.exists() or not backup_dir.is_dir():
        return records
    wanted = sanitize_name_component(world_name) if world_name else None
    for path in backup_dir.iterdir():
        if not path.is_file():
            continue
        record = parse_archive_name(path)
        if record is None:
            continue
        if wanted is not None and record.world_name != wanted:
            continue
        records.append(record)
    records.sort(key=lambda item: item.sort_key)
    return records


def primary_world_file(worlds_dir, world_name):
    """Path of the world database that must exist for a backup to be meaningful."""
    return Path(worlds_dir) / f"{world_name}.db"


def world_files(worlds_dir, world_name):
    """Return the world's persistent files (``<world>.db``, ``.fwl`` and their ``.old`` copies)."""
    worlds_dir = Path(worlds_dir)
    if not worlds_dir.is_dir():
        return []
    prefix = f"{world_name}."
    return sorted(p for p in worlds_dir.iterdir() if p.is_file() and p.name.startswith(prefix))


def new_partial_path(backup_dir, world_name):
    """Hidden temp path in the backup directory; never matches the archive pattern."""
    token = uuid.uuid4().hex[:12]
    return Path(backup_dir) / f".valheim_{sanitize_name_component(world_name)}.{os.getpid()}.{token}.partial"


def _pid_alive(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def discard_stale_partials(backup_dir):
    """Delete partial archives left behind by processes that no longer exist."""
    backup_dir = Path(backup_dir)
    removed = []
    if not backup_dir.is_dir():
        return removed
    for path in backup_dir.iterdir():
        match = _PARTIAL_RE.match(path.name)
        if not match:
            continue
        pid = int(match.group("pid"))
        if pid == os.getpid() or _pid_alive(pid):
            continue
        try:
            path.unlink()
            removed.append(path)
        except FileNotFoundError:
            continue
    return removed


def _check_cancel(cancel_event):
    if cancel_event is not None and cancel_event.is_set():
        raise TaskCancelled("backup cancelled while writing archive")


def write_archive(target, files, compress=True, cancel_event=None):
    """Write ``files`` into ``target``, checking for cancellation between members."""
    if compress:
        with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for path in files:
                _check_cancel(cancel_event)
                zf.write(path, arcname=f"{ARCHIVE_MEMBER_DIR}/{path.name}")
    else:
        with tarfile.open(target, "w:gz") as tf:
            for path in files:
                _check_cancel(cancel_event)
                tf.add(str(path), arcname=f"{ARCHIVE_MEMBER_DIR}/{path.name}")
    _check_cancel(cancel_event)
    with open(target, "rb") as fh:
        os.fsync(fh.fileno())


def publish_archive(partial, backup_dir, world_name, created_at, compress=True):
    """Move a finished partial archive to its final name without overwriting.

    Returns ``(path, sequence)``. Same-second collisions take the next free
    ``_N`` suffix; ``os.link`` fails on an existing name, so two writers can
    never clobber each other.
    """
    backup_dir = Path(backup_dir)
    sequence = 0
    while True:
        final = backup_dir / archive_name(world_name, created_at, sequence, compress)
        try:
            os.link(partial, final)
        except FileExistsError:
            sequence += 1
            continue
        except OSError:
            # Filesystems without hard links: reserve the name, then replace it.
            try:
                fd = os.open(final, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                sequence += 1
                continue
            os.close(fd)
            os.replace(partial, final)
            return final, sequence
        os.unlink(partial)
        return final, sequence
