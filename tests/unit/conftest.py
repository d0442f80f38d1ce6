"""Shared fixtures for portafs unit tests."""

import logging
import threading
from collections import Counter
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from portafs import Registry
from portafs.fs import detect_platforms


LAST_MODIFIED = "Wed, 21 Oct 2015 07:28:00 GMT"
ROCK_BODY = b"package = 'lpeg'\nversion = '1.1.0-1'\n"


@pytest.fixture(autouse=True)
def clean_proxy_env(monkeypatch):
    """Keep proxy settings of the host out of the download tests."""
    for name in ("http_proxy", "https_proxy", "no_proxy", "HTTP_PROXY", "HTTPS_PROXY", "NO_PROXY"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def isolate_portafs_logging():
    """Undo handlers and levels that a test leaves on the portafs loggers."""
    root = logging.getLogger("portafs")
    audit = logging.getLogger("portafs.audit")
    saved = (list(root.handlers), root.level, audit.level)
    yield
    root.handlers[:] = saved[0]
    root.setLevel(saved[1])
    audit.setLevel(saved[2])


@pytest.fixture
def fs():
    """Registry resolved for the running platform."""
    registry = Registry()
    registry.resolve(detect_platforms())
    return registry


class _Handler(BaseHTTPRequestHandler):
    server_version = "portafs-test"

    def log_message(self, format, *args):
        pass

    def _respond(self, send_body):
        self.server.hits[(self.command, self.path)] += 1
        self.server.agents.append(self.headers.get("User-Agent"))
        route = self.server.routes.get(self.path)
        if route is None:
            status, headers, body = 404, {}, b"not found"
        else:
            status, headers, body = route

        self.send_response(status)
        for key, value in headers.items():
            self.send_header(key, value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if send_body:
            self.wfile.write(body)

    def do_GET(self):
        self._respond(True)

    def do_HEAD(self):
        self._respond(False)


class LocalServer:
    """HTTP server on 127.0.0.1 with canned routes and request counters."""

    def __init__(self):
        self.httpd = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
        self.httpd.routes = {}
        self.httpd.hits = Counter()
        self.httpd.agents = []
        self.port = self.httpd.server_address[1]
        self._thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)

    def start(self):
        self._thread.start()

    def stop(self):
        self.httpd.shutdown()
        self.httpd.server_close()

    def url(self, path):
        return f"http://127.0.0.1:{self.port}{path}"

    def route(self, path, status=200, headers=None, body=b""):
        self.httpd.routes[path] = (status, headers or {}, body)

    def hits(self, method, path):
        return self.httpd.hits[(method, path)]

    @property
    def total_hits(self):
        return sum(self.httpd.hits.values())

    @property
    def agents(self):
        return self.httpd.agents


@pytest.fixture
def http_server():
    """
    Local server with routes:

        /rock.tar.gz   200 with Last-Modified
        /plain         200 without Last-Modified
        /moved         301 -> /rock.tar.gz
        /a, /b         302 to each other
        /gopher        302 -> gopher://
        /to-https      302 -> https://
        /error         500
        anything else  404
    """
    server = LocalServer()
    server.route("/rock.tar.gz", headers={"Last-Modified": LAST_MODIFIED}, body=ROCK_BODY)
    server.route("/plain", body=b"plain body")
    server.route("/moved", status=301, headers={"Location": "/rock.tar.gz"})
    server.route("/a", status=302, headers={"Location": server.url("/b")})
    server.route("/b", status=302, headers={"Location": "/a"})
    server.route("/gopher", status=302, headers={"Location": "gopher://example.com/1/rocks"})
    server.route("/to-https", status=302, headers={"Location": "https://127.0.0.1:1/rock.tar.gz"})
    server.route("/error", status=500, body=b"boom")
    server.start()
    yield server
    server.stop()
