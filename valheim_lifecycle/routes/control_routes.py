"""Control API route registration."""

from flask import jsonify

from valheim_lifecycle.core.response_helpers import backup_result_response, ok_response


def register_control_routes(app, orchestrator, *, log_action):
    """Register status, health and manual backup routes."""

    # Route: /status
    @app.route("/status", methods=["GET"])
    def status():
        """Lifecycle state, last task results and backup count."""
        return ok_response(orchestrator.status_snapshot())

    # Route: /health
    @app.route("/health", methods=["GET"])
    def health():
        """200 only while running with a live server process."""
        healthy = orchestrator.is_healthy()
        payload = {"ok": healthy, "state": orchestrator.state.value}
        return jsonify(payload), 200 if healthy else 503

    # Route: /backup
    @app.route("/backup", methods=["POST"])
    def backup():
        """Forced backup; bypasses the enabled flag and the idle gate."""
        log_action("backup-request", "force=true")
        result = orchestrator.trigger_backup(force=True)
        return backup_result_response(result)
