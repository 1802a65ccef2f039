"""Tests for the HTTP health probe."""

import socket
import threading
from wsgiref.simple_server import WSGIRequestHandler, make_server

import httpx
import pytest

from refork.runtime.probe import probe, probe_url


class SilentHandler(WSGIRequestHandler):
    def log_message(self, format, *args):
        pass


def teapot(environ, start_response):
    start_response("418 I'm a teapot", [("Content-Length", "0")])
    return [b""]


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestProbeUrl:
    @pytest.mark.parametrize(
        "address, path, url",
        [
            ("127.0.0.1:8080", "/", "http://127.0.0.1:8080/"),
            ("0.0.0.0:80", "health", "http://127.0.0.1:80/health"),
            (":9000", "/", "http://127.0.0.1:9000/"),
            ("[::]:9", "/", "http://[::1]:9/"),
            ("[::1]:9", "/x", "http://[::1]:9/x"),
        ],
    )
    def test_tcp(self, address, path, url):
        assert probe_url(address, path) == (url, None)

    def test_unix(self, tmp_path):
        url, transport = probe_url(f"unix:{tmp_path / 'app.sock'}")
        assert url == "http://localhost/"
        assert isinstance(transport, httpx.HTTPTransport)


class TestProbe:
    def test_unreachable(self):
        assert probe(f"127.0.0.1:{_free_port()}", timeout=1.0) is False

    def test_any_status_is_healthy(self):
        server = make_server("127.0.0.1", 0, teapot, handler_class=SilentHandler)
        thread = threading.Thread(target=server.handle_request, daemon=True)
        thread.start()
        try:
            assert probe(f"127.0.0.1:{server.server_port}", timeout=5.0) is True
        finally:
            thread.join(timeout=5)
            server.server_close()
