"""Lifecycle event logging with request-aware source identification."""

from datetime import datetime
import os
import sys
import traceback
from flask import request, has_request_context

LOG_ROTATE_MAX_BYTES = 5 * 1024 * 1024
LOG_ROTATE_BACKUP_COUNT = 5


def sanitize_log_fragment(text):
    """Normalize user/system text into a single safe log line fragment."""
    return " ".join(str(text or "").replace("\r", " ").replace("\n", " ").split()).strip()


def get_event_source():
    """Resolve who triggered the event: an API client or the orchestrator itself."""
    if not has_request_context():
        return "lifecycle"
    xff = (request.headers.get("X-Forwarded-For") or "").strip()
    if xff:
        first = xff.split(",")[0].strip()
        if first:
            return f"api:{first}"
    direct = (request.remote_addr or "").strip()
    return f"api:{direct}" if direct else "api"


def _rotate_log_file(path, max_bytes=LOG_ROTATE_MAX_BYTES, backup_count=LOG_ROTATE_BACKUP_COUNT):
    """Rotate log file when size reaches threshold."""
    if max_bytes <= 0 or backup_count <= 0:
        return
    try:
        if not path.exists():
            return
        if path.stat().st_size < max_bytes:
            return
        for idx in range(backup_count - 1, 0, -1):
            src = path.with_name(f"{path.name}.{idx}")
            dst = path.with_name(f"{path.name}.{idx + 1}")
            if src.exists():
                os.replace(src, dst)
        first = path.with_name(f"{path.name}.1")
        os.replace(path, first)
    except OSError:
        # Rotation failures must not break lifecycle tasks.
        pass


def format_event_line(display_tz, action, detail=None, error=None, source=None):
    """Build one ``<time> <source> [valheim/<action>] ...`` line, or '' if empty."""
    timestamp = datetime.now(tz=display_tz).strftime("%b %d %H:%M:%S")
    safe_source = sanitize_log_fragment(source or get_event_source()) or "unknown"
    safe_action = sanitize_log_fragment(action) or "unknown"
    parts = [f"{timestamp} <{safe_source}> [valheim/{safe_action}]"]
    if detail:
        safe_detail = sanitize_log_fragment(detail)
        if safe_detail:
            parts.append(safe_detail)
    if error:
        safe_error = sanitize_log_fragment(error)
        if safe_error:
            parts.append(f"rejected: {safe_error}")
    return " ".join(parts).strip()


def make_log_action(display_tz, log_file=None, stream=None):
    """Build and return the structured event logger closure."""

    def log_action(action, detail=None, error=None):
        """Emit one event line to the stream and log file; failures are swallowed."""
        line = format_event_line(display_tz, action, detail, error)
        if not line:
            return
        out = stream if stream is not None else sys.stdout
        try:
            out.write(line + "\n")
            out.flush()
        except (OSError, ValueError):
            pass
        if log_file is None:
            return
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            _rotate_log_file(log_file)
            with log_file.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError:
            # Logging must not break lifecycle tasks.
            pass

    return log_action


def make_log_exception(log_action):
    """Build and return an exception logger that emits through log_action."""

    def log_exception(context, exc):
        """Log a compact exception summary with a truncated traceback."""
        exc_name = type(exc).__name__ if exc is not None else "Exception"
        exc_text = sanitize_log_fragment(str(exc) if exc is not None else "")
        tb = ""
        if exc is not None:
            tb = sanitize_log_fragment(" | ".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
        message = f"{context}: {exc_name}"
        if exc_text:
            message += f": {exc_text}"
        if tb:
            message += f" | traceback: {tb[:700]}"
        log_action("error", error=message)

    return log_exception
