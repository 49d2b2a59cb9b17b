import os
import socket
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Dict, List, Optional, Tuple

import pytest


# Tests import `filtersync` and `app` from web/.
WEB_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if WEB_DIR not in sys.path:
    sys.path.insert(0, WEB_DIR)


class FilterServer:
    """Scripted HTTP origin for filter lists.

    Each path maps to (status, body, last_modified). A request carrying
    If-Modified-Since equal to the path's last_modified gets a 304.
    """

    def __init__(self) -> None:
        self.routes: Dict[str, Tuple[int, bytes, Optional[str]]] = {}
        self.requests: List[Tuple[str, Dict[str, str]]] = []
        self._lock = threading.Lock()
        self.httpd: Optional[ThreadingHTTPServer] = None

    def set(self, path: str, body: bytes = b"", *, status: int = 200, last_modified: Optional[str] = None) -> str:
        self.routes[path] = (status, body, last_modified)
        return self.url(path)

    def url(self, path: str) -> str:
        assert self.httpd is not None
        host, port = self.httpd.server_address[:2]
        return f"http://{host}:{port}{path}"

    def hits(self, path: str) -> int:
        with self._lock:
            return sum(1 for p, _ in self.requests if p == path)

    def last_headers(self, path: str) -> Dict[str, str]:
        with self._lock:
            for p, headers in reversed(self.requests):
                if p == path:
                    return headers
        return {}

    def record(self, path: str, headers: Dict[str, str]) -> None:
        with self._lock:
            self.requests.append((path, headers))


def _make_handler(server: FilterServer):
    class Handler(BaseHTTPRequestHandler):
        def log_message(self, fmt, *args):
            pass

        def do_GET(self):
            path = (self.path or "").split("?", 1)[0]
            server.record(path, {k: v for k, v in self.headers.items()})

            route = server.routes.get(path)
            if route is None:
                self.send_response(404)
                self.send_header("Content-Length", "0")
                self.end_headers()
                return

            status, body, last_modified = route
            if last_modified and self.headers.get("If-Modified-Since") == last_modified:
                self.send_response(304)
                self.end_headers()
                return

            self.send_response(status)
            self.send_header("Content-Type", "text/plain; charset=utf-8")
            self.send_header("Content-Length", str(len(body)))
            if last_modified:
                self.send_header("Last-Modified", last_modified)
            self.end_headers()
            self.wfile.write(body)

    return Handler


@pytest.fixture(autouse=True)
def _no_proxy(monkeypatch):
    # urllib picks up proxies from the environment; test servers are local.
    for name in ("http_proxy", "https_proxy", "all_proxy", "HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def filter_server():
    server = FilterServer()
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _make_handler(server))
    server.httpd = httpd
    t = threading.Thread(target=httpd.serve_forever, name="test-filter-server", daemon=True)
    t.start()
    try:
        yield server
    finally:
        httpd.shutdown()
        httpd.server_close()


@pytest.fixture
def refused_url():
    """URL of a local port with nothing listening."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return f"http://127.0.0.1:{port}/list.txt"


@pytest.fixture
def filter_dir(tmp_path):
    d = tmp_path / "filters"
    d.mkdir()
    return str(d)
