"""Tests for the monitor/child datagram codec."""

import json

import pytest

from refork.runtime.messages import (
    MessageError,
    SpawnMold,
    SpawnWorker,
    decode_command,
    decode_message,
    encode_command,
    encode_message,
)
from refork.supervision.models import ChildKind
from refork.supervision.notifications import ChildReady, ChildSpawned, ForkUnsafe, RequestsServed


class TestChildMessages:
    def test_wire_format(self):
        data = encode_message(RequestsServed(pid=4242, nr=0, generation=1, count=12))
        assert json.loads(data) == {"type": "requests", "pid": 4242, "nr": 0, "generation": 1, "count": 12}

    def test_decode(self):
        assert decode_message(b'{"type":"spawned","spawn_id":7,"pid":4242,"kind":"worker"}') == ChildSpawned(
            7, 4242, ChildKind.WORKER
        )
        assert decode_message(b'{"type":"ready","spawn_id":3,"pid":11,"kind":"mold"}') == ChildReady(
            3, 11, ChildKind.MOLD
        )
        assert decode_message(encode_message(ForkUnsafe(9))) == ForkUnsafe(9)

    @pytest.mark.parametrize(
        "data",
        [
            b"not json",
            b"\xff\xfe",
            b"[1, 2]",
            b'{"pid": 1}',
            b'{"type": "ready", "spawn_id": 1}',
            b'{"type": "spawned", "spawn_id": 1, "pid": 2, "kind": "wizard"}',
            b'{"type": "bogus"}',
        ],
    )
    def test_invalid_messages(self, data):
        with pytest.raises(MessageError):
            decode_message(data)

    def test_encode_rejects_commands(self):
        with pytest.raises(TypeError):
            encode_message(SpawnMold(1, 1))


class TestCommands:
    def test_wire_format(self):
        assert json.loads(encode_command(SpawnWorker(spawn_id=8, nr=1, generation=1))) == {
            "type": "spawn_worker",
            "spawn_id": 8,
            "nr": 1,
            "generation": 1,
        }
        assert decode_command(b'{"type":"spawn_mold","spawn_id":9,"generation":2}') == SpawnMold(9, 2)

    def test_child_message_is_not_a_command(self):
        with pytest.raises(MessageError):
            decode_command(encode_message(ForkUnsafe(1)))

    def test_malformed_command(self):
        with pytest.raises(MessageError):
            decode_command(b'{"type":"spawn_worker","spawn_id":"x","nr":0,"generation":0}')
