"""Logging setup helpers."""

from valheim_lifecycle.core.action_logging import make_log_action, make_log_exception


def build_loggers(display_tz, log_file, stream=None):
    """Create the lifecycle event writer and its exception logger."""
    log_action = make_log_action(display_tz, log_file, stream=stream)
    log_exception = make_log_exception(log_action)
    return log_action, log_exception
