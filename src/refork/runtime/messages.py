"""JSON datagram codec between the monitor and its children.

One datagram is one JSON object with a ``type`` field.  Datagrams on a
``SOCK_DGRAM`` Unix socket are delivered whole, so no framing is needed.

Child → monitor::

    {"type": "spawned", "spawn_id": 7, "pid": 4242, "kind": "worker"}
    {"type": "ready", "spawn_id": 7, "pid": 4242, "kind": "worker"}
    {"type": "requests", "pid": 4242, "nr": 0, "generation": 1, "count": 12}
    {"type": "fork_unsafe", "pid": 4242}

Monitor → child::

    {"type": "spawn_worker", "spawn_id": 8, "nr": 1, "generation": 1}
    {"type": "spawn_mold", "spawn_id": 9, "generation": 2}
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from refork.supervision.models import ChildKind
from refork.supervision.notifications import ChildReady, ChildSpawned, ForkUnsafe, RequestsServed

MAX_DATAGRAM = 65536


class MessageError(ValueError):
    """A datagram that is not a valid message."""


@dataclass(frozen=True)
class SpawnWorker:
    spawn_id: int
    nr: int
    generation: int


@dataclass(frozen=True)
class SpawnMold:
    spawn_id: int
    generation: int


ChildMessage = ChildSpawned | ChildReady | RequestsServed | ForkUnsafe
Command = SpawnWorker | SpawnMold


def _dump(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def _load(data: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MessageError(f"Undecodable datagram: {exc}") from exc
    if not isinstance(payload, dict) or "type" not in payload:
        raise MessageError(f"Datagram without a type: {payload!r}")
    return payload


def encode_message(message: ChildMessage) -> bytes:
    if isinstance(message, ChildSpawned):
        return _dump({"type": "spawned", "spawn_id": message.spawn_id, "pid": message.pid, "kind": message.kind.value})
    if isinstance(message, ChildReady):
        return _dump({"type": "ready", "spawn_id": message.spawn_id, "pid": message.pid, "kind": message.kind.value})
    if isinstance(message, RequestsServed):
        return _dump({
            "type": "requests",
            "pid": message.pid,
            "nr": message.nr,
            "generation": message.generation,
            "count": message.count,
        })
    if isinstance(message, ForkUnsafe):
        return _dump({"type": "fork_unsafe", "pid": message.pid})
    raise TypeError(f"Not a child message: {message!r}")


def decode_message(data: bytes) -> ChildMessage:
    payload = _load(data)
    kind = payload["type"]
    try:
        if kind == "spawned":
            return ChildSpawned(int(payload["spawn_id"]), int(payload["pid"]), ChildKind(payload["kind"]))
        if kind == "ready":
            return ChildReady(int(payload["spawn_id"]), int(payload["pid"]), ChildKind(payload["kind"]))
        if kind == "requests":
            return RequestsServed(
                pid=int(payload["pid"]),
                nr=int(payload["nr"]),
                generation=int(payload["generation"]),
                count=int(payload["count"]),
            )
        if kind == "fork_unsafe":
            return ForkUnsafe(int(payload["pid"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise MessageError(f"Malformed {kind} message: {payload!r}") from exc
    raise MessageError(f"Unknown message type {kind!r}")


def encode_command(command: Command) -> bytes:
    if isinstance(command, SpawnWorker):
        return _dump({"type": "spawn_worker", "spawn_id": command.spawn_id, "nr": command.nr, "generation": command.generation})
    if isinstance(command, SpawnMold):
        return _dump({"type": "spawn_mold", "spawn_id": command.spawn_id, "generation": command.generation})
    raise TypeError(f"Not a command: {command!r}")


def decode_command(data: bytes) -> Command:
    payload = _load(data)
    kind = payload["type"]
    try:
        if kind == "spawn_worker":
            return SpawnWorker(int(payload["spawn_id"]), int(payload["nr"]), int(payload["generation"]))
        if kind == "spawn_mold":
            return SpawnMold(int(payload["spawn_id"]), int(payload["generation"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise MessageError(f"Malformed {kind} command: {payload!r}") from exc
    raise MessageError(f"Unknown command type {kind!r}")


__all__ = [
    "MAX_DATAGRAM",
    "MessageError",
    "SpawnWorker",
    "SpawnMold",
    "ChildMessage",
    "Command",
    "encode_message",
    "decode_message",
    "encode_command",
    "decode_command",
]
