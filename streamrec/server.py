from __future__ import annotations

import base64
import functools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

import numpy as np
import trio

from streamrec.engine.recognizer import Recognizer
from streamrec.engine.result import RecognitionResult
from streamrec.engine.stream import Stream
from streamrec.errors import InvalidInput, ParseError

logger = logging.getLogger(__name__)


@dataclass
class ConnectionState:
    stream: Stream
    send_channel: trio.MemorySendChannel
    final_requested: bool = False
    disconnected: bool = False
    last_sent: tuple = field(default_factory=tuple)


class RecognizerSocketServer:
    """Newline-delimited JSON over TCP.

    Every connection owns one stream. A single dispatcher task batches the
    ready streams of all connections into one ``decode_streams`` call per round.
    """

    def __init__(
        self,
        recognizer: Recognizer,
        host: str = "0.0.0.0",
        port: int = 6006,
        status_port: int | None = None,
        poll_interval: float = 0.005,
    ):
        self.recognizer = recognizer
        self.scheduler = recognizer.scheduler
        self.host = host
        self.port = port
        self.status_port = status_port
        self.poll_interval = poll_interval
        self._connections: dict[int, ConnectionState] = {}

    async def serve(self) -> None:
        logger.info("Started server on %s:%s", self.host, self.port)
        async with trio.open_nursery() as nursery:
            nursery.start_soon(self._dispatch_loop)
            serve_main = functools.partial(
                trio.serve_tcp, self._handle_client, self.port, host=self.host
            )
            nursery.start_soon(serve_main)
            if self.status_port is not None:
                logger.info(
                    "Starting status endpoint on %s:%s", self.host, self.status_port
                )
                serve_status = functools.partial(
                    trio.serve_tcp,
                    self._handle_status,
                    self.status_port,
                    host=self.host,
                )
                nursery.start_soon(serve_status)

    async def _handle_client(self, sock: trio.SocketStream) -> None:
        send_lock = trio.Lock()
        buffer = bytearray()
        pending: list[dict[str, Any]] = []
        hotwords = None

        # An optional {"type": "start", "hotwords": ...} may precede the features.
        while not pending:
            data = await sock.receive_some(4096)
            if not data:
                await sock.aclose()
                return
            buffer.extend(data)
            pending.extend(_drain_messages(buffer))
        if pending[0].get("type") == "start":
            hotwords = pending.pop(0).get("hotwords")

        try:
            stream = self.recognizer.create_stream(hotwords)
        except ParseError as exc:
            await _send_json(sock, send_lock, {"type": "error", "message": str(exc)})
            await sock.aclose()
            return

        send_channel, receive_channel = trio.open_memory_channel(64)
        state = ConnectionState(stream=stream, send_channel=send_channel)
        self._connections[stream.stream_id] = state
        self.scheduler.add(stream)
        await _send_json(
            sock,
            send_lock,
            {
                "type": "hello",
                "stream_id": stream.stream_id,
                "feature_dim": stream.feature_dim,
            },
        )

        try:
            async with trio.open_nursery() as nursery:
                nursery.start_soon(
                    self._reader_loop,
                    sock,
                    state,
                    buffer,
                    pending,
                    send_lock,
                    nursery.cancel_scope,
                )
                nursery.start_soon(
                    self._writer_loop,
                    sock,
                    state,
                    receive_channel,
                    send_lock,
                    nursery.cancel_scope,
                )
        finally:
            self.scheduler.release(stream)
            self._connections.pop(stream.stream_id, None)
            await sock.aclose()

    async def _reader_loop(
        self,
        sock: trio.SocketStream,
        state: ConnectionState,
        buffer: bytearray,
        pending: list[dict[str, Any]],
        send_lock: trio.Lock,
        cancel_scope: trio.CancelScope,
    ) -> None:
        try:
            while True:
                for message in pending:
                    if await self._handle_message(sock, state, message, send_lock):
                        return
                pending.clear()
                data = await sock.receive_some(4096)
                if not data:
                    state.disconnected = True
                    cancel_scope.cancel()
                    return
                buffer.extend(data)
                pending.extend(_drain_messages(buffer))
        except trio.BrokenResourceError:
            state.disconnected = True
            cancel_scope.cancel()
        except Exception:
            logger.exception("Reader loop failed for stream %s", state.stream.stream_id)
            state.disconnected = True
            cancel_scope.cancel()

    async def _handle_message(
        self,
        sock: trio.SocketStream,
        state: ConnectionState,
        message: dict[str, Any],
        send_lock: trio.Lock,
    ) -> bool:
        msg_type = message.get("type")
        if msg_type == "features":
            try:
                state.stream.feed(_parse_features_message(message))
            except (InvalidInput, ValueError) as exc:
                await _send_json(sock, send_lock, {"type": "error", "message": str(exc)})
            return False
        if msg_type == "close":
            self._request_final(state)
            return True
        if msg_type == "ping":
            await _send_json(sock, send_lock, {"type": "pong"})
            return False
        await _send_json(
            sock, send_lock, {"type": "error", "message": "unknown message type"}
        )
        return False

    async def _writer_loop(
        self,
        sock: trio.SocketStream,
        state: ConnectionState,
        receive_channel: trio.MemoryReceiveChannel,
        send_lock: trio.Lock,
        cancel_scope: trio.CancelScope,
    ) -> None:
        try:
            async with receive_channel:
                async for payload in receive_channel:
                    await _send_json(sock, send_lock, payload)
            cancel_scope.cancel()
        except trio.BrokenResourceError:
            state.disconnected = True
            cancel_scope.cancel()

    def _request_final(self, state: ConnectionState) -> None:
        if state.final_requested:
            return
        state.final_requested = True
        state.stream.input_finished()

    async def _dispatch_loop(self) -> None:
        while True:
            streams = self.scheduler.ready_streams()
            if streams:
                try:
                    await trio.to_thread.run_sync(
                        self.recognizer.decode_streams, streams
                    )
                except Exception:
                    logger.exception(
                        "Model call failed for %d streams; retrying", len(streams)
                    )
                    await trio.sleep(self.poll_interval)
                    continue
                for stream in streams:
                    await self._publish(stream)
            for state in list(self._connections.values()):
                if state.stream.is_finished:
                    await self._publish(state.stream, last=True)
            if not streams:
                await trio.sleep(self.poll_interval)

    async def _publish(self, stream: Stream, last: bool = False) -> None:
        state = self._connections.get(stream.stream_id)
        if state is None:
            return
        result = self.recognizer.get_result(stream)
        key = (result.segment, tuple(result.token_ids), result.is_final)
        if key != state.last_sent or last:
            state.last_sent = key
            payload = _result_payload(stream, result)
            payload["is_last"] = last
            try:
                state.send_channel.send_nowait(payload)
            except trio.WouldBlock:
                logger.warning("Dropping result for slow client %s", stream.stream_id)
            except trio.ClosedResourceError:
                return
        if result.is_final:
            self.recognizer.reset(stream)
        if last:
            self._connections.pop(stream.stream_id, None)
            await state.send_channel.aclose()

    async def _handle_status(self, sock: trio.SocketStream) -> None:
        payload = {
            "type": "status",
            "connected_streams": len(self._connections),
            **self.recognizer.get_metrics(),
        }
        message = json.dumps(payload, separators=(",", ":")) + "\n"
        await sock.send_all(message.encode("utf-8"))
        await sock.aclose()


def _drain_messages(buffer: bytearray) -> Iterable[dict[str, Any]]:
    while True:
        newline = buffer.find(b"\n")
        if newline == -1:
            break
        raw_line = buffer[:newline]
        del buffer[: newline + 1]
        if not raw_line.strip():
            continue
        try:
            yield json.loads(raw_line.decode("utf-8"))
        except json.JSONDecodeError:
            logger.warning("Skipping malformed message")
            continue


def _parse_features_message(message: dict[str, Any]) -> np.ndarray:
    if "features" in message:
        return np.asarray(message["features"], dtype=np.float32)
    data = message.get("data")
    if not data:
        return np.empty((0,), dtype=np.float32)
    return np.frombuffer(base64.b64decode(data), dtype=np.float32)


def _result_payload(stream: Stream, result: RecognitionResult) -> dict[str, Any]:
    payload = {"type": "result", "stream_id": stream.stream_id}
    payload.update(result.as_dict())
    return payload


async def _send_json(
    sock: trio.SocketStream, lock: trio.Lock, payload: dict[str, Any]
) -> None:
    message = json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n"
    data = message.encode("utf-8")
    async with lock:
        await sock.send_all(data)
