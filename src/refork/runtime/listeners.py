"""Listening sockets shared by every worker.

The monitor binds each address once, before any fork; every mold and
worker inherits the same file descriptors and the kernel spreads
incoming connections across the workers accepting on them.

Address syntax::

    127.0.0.1:8080      IPv4
    [::1]:8080          IPv6
    :8080 / 8080        all IPv4 interfaces
    unix:/run/app.sock  Unix domain socket
"""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass

from refork.core.errors import ConfigError

BACKLOG = 1024


@dataclass(frozen=True)
class Address:
    """A parsed listen address."""

    family: socket.AddressFamily
    host: str = ""
    port: int = 0
    path: str | None = None

    @property
    def is_unix(self) -> bool:
        return self.family == socket.AF_UNIX

    def __str__(self) -> str:
        if self.is_unix:
            return f"unix:{self.path}"
        if self.family == socket.AF_INET6:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def parse_address(text: str) -> Address:
    """Parse ``host:port``, ``[v6]:port``, ``:port``, ``port`` or ``unix:/path``.

    Raises:
        ConfigError: If the address cannot be parsed
    """
    value = text.strip()
    if value.startswith("unix:"):
        path = value[len("unix:"):]
        if not path:
            raise ConfigError(f"Empty unix socket path in {text!r}")
        return Address(socket.AF_UNIX, path=path)

    if value.startswith("["):
        host, sep, port = value[1:].partition("]:")
        family = socket.AF_INET6
        if not sep:
            raise ConfigError(f"Invalid IPv6 listen address {text!r}")
    elif ":" in value:
        host, _, port = value.rpartition(":")
        family = socket.AF_INET
    else:
        host, port = "", value
        family = socket.AF_INET

    try:
        number = int(port)
    except ValueError:
        raise ConfigError(f"Invalid port in listen address {text!r}") from None
    if not 0 <= number <= 65535:
        raise ConfigError(f"Port out of range in listen address {text!r}")
    return Address(family, host=host or ("::" if family == socket.AF_INET6 else "0.0.0.0"), port=number)


def bind(address: Address) -> socket.socket:
    """Create a non-blocking listening socket for *address*."""
    sock = socket.socket(address.family, socket.SOCK_STREAM)
    try:
        if address.is_unix:
            if os.path.exists(address.path):
                os.unlink(address.path)
            sock.bind(address.path)
        else:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((address.host, address.port))
        sock.listen(BACKLOG)
        sock.setblocking(False)
    except OSError as exc:
        sock.close()
        raise ConfigError(f"Cannot listen on {address}: {exc}", cause=exc) from exc
    return sock


def bind_all(addresses: list[str]) -> list[socket.socket]:
    """Bind every address, closing what was already bound if one fails."""
    sockets: list[socket.socket] = []
    try:
        for text in addresses:
            sockets.append(bind(parse_address(text)))
    except ConfigError:
        for sock in sockets:
            sock.close()
        raise
    return sockets


def bound_address(sock: socket.socket) -> str:
    """The address a bound socket actually listens on (resolves port 0)."""
    name = sock.getsockname()
    if sock.family == socket.AF_UNIX:
        return f"unix:{name}"
    if sock.family == socket.AF_INET6:
        return f"[{name[0]}]:{name[1]}"
    return f"{name[0]}:{name[1]}"


__all__ = ["Address", "parse_address", "bind", "bind_all", "bound_address", "BACKLOG"]
