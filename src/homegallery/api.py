#!/usr/bin/env python3
"""
Gallery HTTP API

This module provides:
- GalleryHTTPHandler: JSON CRUD and health-check endpoints under /api
- start_api_server: launches a ThreadingHTTPServer in a daemon thread
- GalleryClient: thin HTTP client matching the API shape
"""

import json
import logging
import re
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, List, Optional

from . import __version__
from .errors import GalleryClientError, ValidationError
from .gallery import CheckOutcome, ServiceGallery
from .registry import ServiceRecord

logger = logging.getLogger(__name__)

ENDPOINTS = [
    'GET /api/services - List all services',
    'GET /api/services/:id - Get one service',
    'POST /api/services - Create new service',
    'PUT /api/services/:id - Update service',
    'DELETE /api/services/:id - Delete service',
    'PUT /api/services/reorder - Reorder services',
    'GET /api/services/:id/health - Manual health check',
]

_SERVICE_PATH = re.compile(r"^/api/services/(\d+)$")
_HEALTH_PATH = re.compile(r"^/api/services/(\d+)/health$")


class _BadRequest(Exception):
    pass


# ---------------------------------------------------------------------------
# HTTP handler
# ---------------------------------------------------------------------------

def _make_handler(gallery: ServiceGallery):
    """Create a handler class bound to the given gallery instance."""

    class GalleryHTTPHandler(BaseHTTPRequestHandler):

        def log_message(self, format, *args):
            logger.debug("%s - %s", self.address_string(), format % args)

        def end_headers(self):
            self.send_header("Access-Control-Allow-Origin", "*")
            self.send_header("Access-Control-Allow-Methods", "GET, POST, PUT, DELETE, OPTIONS")
            self.send_header("Access-Control-Allow-Headers", "Content-Type")
            super().end_headers()

        def _json_response(self, data: Any, status: int = 200):
            body = json.dumps(data).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def _read_json(self) -> Any:
            try:
                length = int(self.headers.get("Content-Length") or 0)
            except ValueError:
                raise _BadRequest("Invalid Content-Length header") from None
            if length < 0:
                raise _BadRequest("Invalid Content-Length header")
            raw = self.rfile.read(length) if length else b""
            try:
                return json.loads(raw or b"{}")
            except (json.JSONDecodeError, UnicodeDecodeError):
                raise _BadRequest("Invalid JSON body") from None

        def _path(self) -> str:
            return urllib.parse.urlparse(self.path).path.rstrip("/")

        def _dispatch(self, route):
            try:
                route(self._path())
            except (_BadRequest, ValidationError) as exc:
                self._json_response({"error": str(exc)}, status=400)
            except Exception:
                logger.exception("Unhandled error serving %s %s", self.command, self.path)
                self._json_response({"error": "Internal server error"}, status=500)

        def _not_found(self, what: str = "Service not found"):
            self._json_response({"error": what}, status=404)

        # -- verbs ------------------------------------------------------------

        def do_OPTIONS(self):
            self.send_response(200)
            self.send_header("Content-Length", "0")
            self.end_headers()

        def do_GET(self):
            self._dispatch(self._route_get)

        def do_POST(self):
            self._dispatch(self._route_post)

        def do_PUT(self):
            self._dispatch(self._route_put)

        def do_DELETE(self):
            self._dispatch(self._route_delete)

        # -- routes -----------------------------------------------------------

        def _route_get(self, path: str):
            if path == "/api":
                self._json_response({
                    "message": "Home Server Gallery API",
                    "version": __version__,
                    "endpoints": ENDPOINTS,
                })
            elif path == "/api/health":
                self._json_response({
                    "status": "healthy",
                    "timestamp": time.strftime("%Y-%m-%d %H:%M:%S %z"),
                })
            elif path == "/api/services":
                services = gallery.list_services()
                self._json_response([s.to_dict() for s in services])
            elif (match := _HEALTH_PATH.match(path)):
                result = gallery.check_service(int(match.group(1)))
                if result.outcome is CheckOutcome.NOT_FOUND:
                    self._not_found()
                elif result.outcome is CheckOutcome.NO_TARGET:
                    self._json_response(
                        {"error": "Service has no URL to check"}, status=422,
                    )
                else:
                    self._json_response({"status": result.status.value})
            elif (match := _SERVICE_PATH.match(path)):
                record = gallery.get_service(int(match.group(1)))
                if record:
                    self._json_response(record.to_dict())
                else:
                    self._not_found()
            else:
                self._not_found("not found")

        def _route_post(self, path: str):
            if path != "/api/services":
                self._not_found("not found")
                return
            record = gallery.create_service(self._read_json())
            self._json_response({
                "id": record.id,
                "status": record.status,
                "message": "Service created successfully",
            }, status=201)

        def _route_put(self, path: str):
            if path == "/api/services/reorder":
                data = self._read_json()
                entries = data.get("services") if isinstance(data, dict) else None
                updated = gallery.reorder_services(entries)
                self._json_response({
                    "message": "Services reordered successfully",
                    "updated": updated,
                })
                return
            match = _SERVICE_PATH.match(path)
            if not match:
                self._not_found("not found")
                return
            record = gallery.update_service(int(match.group(1)), self._read_json())
            if record is None:
                self._not_found()
                return
            self._json_response({
                "status": record.status,
                "message": "Service updated successfully",
            })

        def _route_delete(self, path: str):
            match = _SERVICE_PATH.match(path)
            if match and gallery.delete_service(int(match.group(1))):
                self._json_response({"message": "Service deleted successfully"})
            else:
                self._not_found()

    return GalleryHTTPHandler


def start_api_server(
    gallery: ServiceGallery,
    host: str = "0.0.0.0",
    port: int = 4568,
) -> ThreadingHTTPServer:
    """Start a ThreadingHTTPServer in a daemon thread and return the server."""
    handler = _make_handler(gallery)
    server = ThreadingHTTPServer((host, port), handler)
    thread = threading.Thread(target=server.serve_forever, name="gallery-api", daemon=True)
    thread.start()
    return server


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

class GalleryClient:
    """Thin HTTP client for the gallery API.

    Read calls return ``None``/``[]`` when the server cannot be reached;
    mutations raise :class:`GalleryClientError`.
    """

    def __init__(self, host: str = "localhost", port: int = 4568, timeout: float = 30):
        self._base = f"http://{host}:{port}/api"
        self._timeout = timeout
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    def _request(self, method: str, path: str, payload: Any = None) -> Any:
        data = None
        headers = {}
        if payload is not None:
            data = json.dumps(payload).encode()
            headers["Content-Type"] = "application/json"
        req = urllib.request.Request(
            f"{self._base}{path}", data=data, headers=headers, method=method,
        )
        with self._opener.open(req, timeout=self._timeout) as resp:
            return json.loads(resp.read().decode())

    def _mutate(self, method: str, path: str, payload: Any = None) -> Dict[str, Any]:
        try:
            return self._request(method, path, payload)
        except urllib.error.HTTPError as exc:
            try:
                message = json.loads(exc.read().decode()).get("error", exc.reason)
            except (ValueError, AttributeError):
                message = exc.reason
            raise GalleryClientError(str(message), status=exc.code) from None
        except (urllib.error.URLError, OSError) as exc:
            raise GalleryClientError(f"cannot reach {self._base}: {exc}") from None

    def list_services(self) -> List[ServiceRecord]:
        try:
            data = self._request("GET", "/services")
            return [ServiceRecord.from_dict(d) for d in data]
        except (urllib.error.URLError, OSError):
            return []

    def get_service(self, service_id: int) -> Optional[ServiceRecord]:
        try:
            return ServiceRecord.from_dict(self._request("GET", f"/services/{service_id}"))
        except (urllib.error.URLError, OSError):
            return None

    def create_service(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._mutate("POST", "/services", data)

    def update_service(self, service_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._mutate("PUT", f"/services/{service_id}", data)

    def delete_service(self, service_id: int) -> Dict[str, Any]:
        return self._mutate("DELETE", f"/services/{service_id}")

    def reorder_services(self, orders: List[Dict[str, int]]) -> Dict[str, Any]:
        return self._mutate("PUT", "/services/reorder", {"services": orders})

    def check_service(self, service_id: int) -> Dict[str, Any]:
        return self._mutate("GET", f"/services/{service_id}/health")
