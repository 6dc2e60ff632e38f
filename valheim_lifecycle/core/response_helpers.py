"""Shared Flask JSON responses for the control API."""

from flask import jsonify

from valheim_lifecycle.state import (
    OUTCOME_BUSY,
    OUTCOME_DEFERRED,
    OUTCOME_NO_WORLD_DATA,
    OUTCOME_OK,
)

_BACKUP_STATUS_CODES = {
    OUTCOME_OK: 200,
    OUTCOME_BUSY: 409,
    OUTCOME_DEFERRED: 409,
    OUTCOME_NO_WORLD_DATA: 422,
}


def ok_response(payload=None):
    """Return a success payload with ``ok: true`` merged in."""
    body = {"ok": True}
    body.update(payload or {})
    return jsonify(body)


def error_response(error, message, status_code):
    """Return a standardized rejection payload."""
    return jsonify({"ok": False, "error": error, "message": message}), status_code


def backup_result_response(result):
    """Map a ``BackupResult`` to its JSON body and HTTP status."""
    body = {
        "ok": result.ok,
        "outcome": result.outcome,
        "message": result.message,
        "archive": result.record.path.name if result.record is not None else None,
        "evicted": [record.path.name for record in result.evicted],
        "retention_errors": [str(error) for error in result.retention_errors],
    }
    return jsonify(body), _BACKUP_STATUS_CODES.get(result.outcome, 500)


def internal_error_response():
    """Return generic internal-error response payload."""
    return error_response("internal_error", "Internal server error.", 500)
