"""Control API app factory."""

from flask import Flask, has_request_context, request
from werkzeug.exceptions import HTTPException

from valheim_lifecycle.core.response_helpers import error_response, internal_error_response
from valheim_lifecycle.routes.control_routes import register_control_routes


def create_app(orchestrator, *, log_action, log_exception):
    """Return the Flask app serving the local control API."""
    app = Flask(__name__)

    @app.errorhandler(HTTPException)
    def _http_exception_handler(exc):
        return error_response(exc.name.lower().replace(" ", "_"), exc.description, exc.code)

    @app.errorhandler(Exception)
    def _unhandled_exception_handler(exc):
        path = request.path if has_request_context() else "unknown-path"
        log_exception(f"unhandled_exception path={path}", exc)
        return internal_error_response()

    register_control_routes(app, orchestrator, log_action=log_action)
    return app
