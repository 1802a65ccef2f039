"""Serve WSGI requests on connections accepted from inherited listeners.

Workers do not own their listening sockets: they inherit them from the
monitor.  :class:`ConnectionServer` reuses ``wsgiref``'s server and
handler classes without letting them bind anything; each accepted
connection is handed to ``process_request`` and carries one request.
"""

from __future__ import annotations

import importlib
import socket
from collections.abc import Callable
from typing import Any
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer

from refork.core.errors import ConfigError
from refork.core.logging import get_logger

logger = get_logger(__name__)

WSGIApp = Callable[..., Any]


def load_app(spec: str) -> WSGIApp:
    """Import ``module:attribute`` (dotted attributes allowed) and return it.

    Raises:
        ConfigError: If the module cannot be imported or the attribute is
            missing or not callable
    """
    module_name, sep, attribute = spec.partition(":")
    if not module_name:
        raise ConfigError(f"Invalid application {spec!r}, expected module:callable")
    attribute = attribute if sep else "application"
    try:
        target: Any = importlib.import_module(module_name)
    except Exception as exc:
        raise ConfigError(f"Cannot import {module_name!r}: {exc}", cause=exc) from exc
    for part in attribute.split("."):
        try:
            target = getattr(target, part)
        except AttributeError:
            raise ConfigError(f"{module_name!r} has no attribute {attribute!r}") from None
    if not callable(target):
        raise ConfigError(f"Application {spec!r} is not callable")
    return target


class QuietRequestHandler(WSGIRequestHandler):
    """``WSGIRequestHandler`` that logs through structlog and copes with Unix peers."""

    timeout = 30

    def address_string(self) -> str:
        if isinstance(self.client_address, tuple) and self.client_address:
            return str(self.client_address[0])
        return "unix"

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("request", client=self.address_string(), line=format % args)


class ConnectionServer(WSGIServer):
    """A ``WSGIServer`` that serves connections accepted elsewhere."""

    def __init__(self, app: WSGIApp, listener: socket.socket):
        super().__init__(("", 0), QuietRequestHandler, bind_and_activate=False)
        self.socket.close()
        self.socket = listener
        name = listener.getsockname()
        if isinstance(name, tuple):
            self.server_name, self.server_port = str(name[0]), int(name[1])
        else:
            self.server_name, self.server_port = "localhost", 0
        self.server_address = name
        self.setup_environ()
        self.set_app(app)

    def serve_connection(self, connection: socket.socket, client_address: Any) -> None:
        """Handle one accepted connection, then close it."""
        connection.setblocking(True)
        if not isinstance(client_address, tuple):
            client_address = ("", 0)
        try:
            self.finish_request(connection, client_address)
        except Exception:
            self.handle_error(connection, client_address)
        finally:
            self.shutdown_request(connection)

    def handle_error(self, request: Any, client_address: Any) -> None:
        logger.exception("request_failed", client=client_address)

    def server_close(self) -> None:
        # The listener belongs to the monitor.
        pass


def accept(listener: socket.socket) -> tuple[socket.socket, Any] | None:
    """Accept from a non-blocking listener; None if another worker won the race."""
    try:
        return listener.accept()
    except (BlockingIOError, InterruptedError, ConnectionAbortedError):
        return None


__all__ = ["WSGIApp", "load_app", "QuietRequestHandler", "ConnectionServer", "accept"]
