"""Filesystem helpers for backup listings and incremental log reads."""

from pathlib import Path


def format_file_size(num_bytes):
    """Format bytes into a human-readable string (B/KB/MB/GB/TB)."""
    value = float(max(0, num_bytes or 0))
    units = ["B", "KB", "MB", "GB", "TB"]
    idx = 0
    while value >= 1024 and idx < len(units) - 1:
        value /= 1024
        idx += 1
    if idx == 0:
        return f"{int(value)} {units[idx]}"
    return f"{value:.1f} {units[idx]}"


def safe_file_size(path):
    """Return file size in bytes or 0 when unavailable."""
    try:
        return Path(path).stat().st_size
    except OSError:
        return 0


def read_text_from_offset(path, offset):
    """Return ``(text, new_offset)`` for bytes appended after ``offset``.

    A file shorter than ``offset`` was truncated or rotated, so reading
    restarts from the beginning.
    """
    path = Path(path)
    try:
        size = path.stat().st_size
    except OSError:
        return "", offset
    if size < offset:
        offset = 0
    try:
        with path.open("rb") as fh:
            fh.seek(offset)
            data = fh.read()
    except OSError:
        return "", offset
    return data.decode("utf-8", errors="ignore"), offset + len(data)
