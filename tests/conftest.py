"""Shared fixtures: a registry in tmp_path and a local HTTP target to probe."""
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from homegallery.gallery import ServiceGallery
from homegallery.registry import JsonServiceStore


class _TargetHandler(BaseHTTPRequestHandler):
    """Answers GET /<code> with that status code, anything else with 200."""

    def log_message(self, format, *args):
        pass

    def do_GET(self):
        code = self.path.strip("/")
        status = int(code) if code.isdigit() else 200
        body = b"ok"
        self.send_response(status)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


@pytest.fixture
def store(tmp_path):
    return JsonServiceStore(tmp_path / "db" / "services.json")


@pytest.fixture
def gallery(store):
    return ServiceGallery(store, probe_timeout=2)


@pytest.fixture
def target_server():
    """Base URL of a local HTTP server, e.g. ``http://127.0.0.1:PORT``."""
    server = ThreadingHTTPServer(("127.0.0.1", 0), _TargetHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


@pytest.fixture
def closed_port():
    """A localhost port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port
