import base64
import functools
import json

import numpy as np
import trio
import trio.testing

from conftest import BLK, HI, frames
from streamrec.server import (
    RecognizerSocketServer,
    _drain_messages,
    _parse_features_message,
)


class TestMessages:
    def test_drain_keeps_partial_line(self):
        buffer = bytearray(b'{"type":"ping"}\n\nnot json\n{"type":"cl')
        assert list(_drain_messages(buffer)) == [{"type": "ping"}]
        assert buffer == bytearray(b'{"type":"cl')
        buffer.extend(b'ose"}\n')
        assert list(_drain_messages(buffer)) == [{"type": "close"}]
        assert buffer == bytearray()

    def test_base64_features(self):
        feats = frames(HI, BLK)
        message = {"type": "features", "data": base64.b64encode(feats.tobytes()).decode()}
        np.testing.assert_array_equal(_parse_features_message(message), feats.ravel())

    def test_list_features(self):
        feats = frames(HI, BLK)
        message = {"type": "features", "features": feats.tolist()}
        np.testing.assert_array_equal(_parse_features_message(message), feats)

    def test_empty_features(self):
        assert _parse_features_message({"type": "features"}).size == 0


async def _read_all(client) -> list[dict]:
    buffer = bytearray()
    messages = []
    while True:
        data = await client.receive_some(4096)
        if not data:
            return messages
        buffer.extend(data)
        messages.extend(_drain_messages(buffer))


async def _exchange(server, requests: list[dict]) -> list[dict]:
    async with trio.open_nursery() as nursery:
        listeners = await nursery.start(
            functools.partial(
                trio.serve_tcp, server._handle_client, 0, host="127.0.0.1"
            )
        )
        nursery.start_soon(server._dispatch_loop)
        client = await trio.testing.open_stream_to_socket_listener(listeners[0])
        for request in requests:
            await client.send_all((json.dumps(request) + "\n").encode("utf-8"))
        with trio.fail_after(10):
            messages = await _read_all(client)
        await client.aclose()
        nursery.cancel_scope.cancel()
    return messages


class TestRecognizerSocketServer:
    def test_session(self, make_recognizer):
        server = RecognizerSocketServer(make_recognizer(), poll_interval=0.001)
        requests = [
            {"type": "ping"},
            {"type": "features", "features": frames(HI, BLK, BLK, BLK).tolist()},
            {"type": "close"},
        ]
        messages = trio.run(_exchange, server, requests)

        assert messages[0]["type"] == "hello"
        assert {"type": "pong"} in messages
        results = [m for m in messages if m["type"] == "result"]
        assert results[0]["text"] == "hi"
        assert results[0]["timestamps"] == "[0.00]"
        assert results[0]["is_final"] is True
        assert results[0]["is_last"] is False
        assert results[-1]["is_last"] is True
        assert results[-1]["segment"] == 1
        assert server.scheduler.active_streams() == []

    def test_dispatcher_survives_failed_model_call(self, make_recognizer, model):
        model.failures = 1
        server = RecognizerSocketServer(make_recognizer(), poll_interval=0.001)
        requests = [
            {"type": "features", "features": frames(HI, BLK, BLK, BLK).tolist()},
            {"type": "close"},
        ]
        messages = trio.run(_exchange, server, requests)

        results = [m for m in messages if m["type"] == "result"]
        assert results[0]["text"] == "hi"
        assert results[0]["is_final"] is True
        assert results[-1]["is_last"] is True
        assert model.failures == 0

    def test_bad_features_are_reported(self, make_recognizer):
        server = RecognizerSocketServer(make_recognizer(), poll_interval=0.001)
        requests = [
            {"type": "features", "features": [[1.0, 2.0]]},
            {"type": "close"},
        ]
        messages = trio.run(_exchange, server, requests)
        errors = [m for m in messages if m["type"] == "error"]
        assert len(errors) == 1
        assert messages[-1]["is_last"] is True

    def test_malformed_hotwords_close_the_connection(self, make_recognizer):
        server = RecognizerSocketServer(make_recognizer(), poll_interval=0.001)
        requests = [{"type": "start", "hotwords": "▁HE NOPE"}]
        messages = trio.run(_exchange, server, requests)
        assert len(messages) == 1
        assert messages[0]["type"] == "error"
        assert "NOPE" in messages[0]["message"]

    def test_status(self, make_recognizer):
        server = RecognizerSocketServer(make_recognizer())

        async def main():
            left, right = trio.testing.memory_stream_pair()
            await server._handle_status(left)
            return await _read_all(right)

        [status] = trio.run(main)
        assert status["type"] == "status"
        assert status["connected_streams"] == 0
        assert status["scheduler"] == {"active": 0, "ready": 0}
