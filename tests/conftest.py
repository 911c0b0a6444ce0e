from __future__ import annotations

import json
import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Union

import pytest


# A route answers with (status, body[, headers]) or a callable taking the raw request body.
# Non-string bodies are sent as JSON.
Route = Union[tuple, Callable[[bytes], tuple]]


class _RouteServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self) -> None:
        super().__init__(("127.0.0.1", 0), _RouteHandler)
        self.routes: dict[tuple[str, str], Route] = {}
        self.delay_seconds: dict[str, float] = {}
        self.requests: list[tuple[str, str]] = []


class _RouteHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    server: _RouteServer

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def do_GET(self) -> None:  # noqa: N802
        self._dispatch("GET", b"")

    def do_POST(self) -> None:  # noqa: N802
        length = int(self.headers.get("Content-Length") or 0)
        self._dispatch("POST", self.rfile.read(length) if length else b"")

    def _dispatch(self, method: str, body: bytes) -> None:
        path = self.path.split("?", 1)[0]
        self.server.requests.append((method, self.path))

        delay = self.server.delay_seconds.get(path)
        if delay:
            time.sleep(delay)

        route = self.server.routes.get((method, path))
        if route is None:
            answer: tuple = (404, "Not Found")
        elif callable(route):
            answer = route(body)
        else:
            answer = route
        status, payload = answer[0], answer[1]
        extra_headers: dict[str, str] = answer[2] if len(answer) > 2 else {}

        if isinstance(payload, str):
            content_type = "text/plain; charset=utf-8"
            body_bytes = payload.encode("utf-8")
        else:
            content_type = "application/json"
            body_bytes = json.dumps(payload).encode("utf-8")

        self.send_response(status)
        self.send_header("Content-Type", content_type)
        for k, v in extra_headers.items():
            self.send_header(k, v)
        self.send_header("Content-Length", str(len(body_bytes)))
        self.end_headers()
        self.wfile.write(body_bytes)


class StubServer:
    def __init__(self, httpd: _RouteServer) -> None:
        self._httpd = httpd
        host, port = httpd.server_address[:2]
        self.base_url = f"http://{host}:{port}"
        self.ws_url = f"ws://{host}:{port}"

    @property
    def requests(self) -> list[tuple[str, str]]:
        return self._httpd.requests

    def route(self, method: str, path: str, response: Route) -> None:
        self._httpd.routes[(method.upper(), path)] = response

    def delay(self, path: str, seconds: float) -> None:
        self._httpd.delay_seconds[path] = seconds


@pytest.fixture()
def stub_server() -> StubServer:
    httpd = _RouteServer()
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()

    try:
        yield StubServer(httpd)
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


def rpc_router(results: dict[str, Any]) -> Callable[[bytes], tuple[int, Any]]:
    """JSON-RPC 2.0 responder: method name -> result (or {"error": ...} as-is)."""

    def _respond(body: bytes) -> tuple[int, Any]:
        req = json.loads(body or b"{}")
        method = req.get("method")
        if method not in results:
            return 200, {"jsonrpc": "2.0", "id": req.get("id"), "error": {"code": -32601, "message": "method not found"}}
        value = results[method]
        if isinstance(value, dict) and "error" in value:
            return 200, {"jsonrpc": "2.0", "id": req.get("id"), **value}
        return 200, {"jsonrpc": "2.0", "id": req.get("id"), "result": value}

    return _respond


@pytest.fixture()
def rpc() -> Callable[[dict[str, Any]], Callable[[bytes], tuple[int, Any]]]:
    return rpc_router


@pytest.fixture()
def closed_port() -> int:
    s = socket.socket()
    s.bind(("127.0.0.1", 0))
    port = int(s.getsockname()[1])
    s.close()
    return port
