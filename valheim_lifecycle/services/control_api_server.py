"""Threaded werkzeug server for the control API."""

import threading

from werkzeug.serving import make_server


class ControlApiServer:
    """Serves a WSGI app on a daemon thread until ``stop()``."""

    def __init__(self, app, host, port, log_action):
        self.app = app
        self.host = host
        self.port = int(port)
        self.log_action = log_action
        self._server = None
        self._thread = None

    def start(self):
        if self._server is not None:
            return
        self._server = make_server(self.host, self.port, self.app, threaded=True)
        self.port = self._server.server_port
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True, name="control-api")
        self._thread.start()
        self.log_action("control-api-start", f"host={self.host} port={self.port}")

    def stop(self):
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(5)
        self._server = None
        self._thread = None
        self.log_action("control-api-stop")
