from itertools import count
import threading

import numpy as np

from streamrec.engine.context_graph import ContextGraph
from streamrec.engine.endpoint import EndpointState
from streamrec.engine.hypothesis import DecoderResult
from streamrec.errors import InvalidInput, Underrun


class Stream:
    counter = count()

    def __init__(
        self,
        feature_dim: int,
        chunk_size: int,
        decoder_result: DecoderResult,
        context_graph: ContextGraph | None = None,
        initial_capacity: int = 1024,
    ):
        self.stream_id = next(Stream.counter)
        self.feature_dim = feature_dim
        self.chunk_size = chunk_size
        self.lock = threading.Lock()

        self._capacity = max(initial_capacity, chunk_size)
        self._buffer = np.empty((self._capacity, feature_dim), dtype=np.float32)
        self._start = 0
        self._len = 0
        self._input_finished = False
        self.num_frames_fed = 0
        self.num_frames_consumed = 0

        self.context_graph = context_graph
        self.decoder_result = decoder_result
        self.endpoint_state = EndpointState()
        self.segment = 0
        # Output frames decoded before the current segment started.
        self.frame_offset = 0

    def __repr__(self) -> str:
        return (
            f"Stream(id={self.stream_id}, buffered={self._len}, "
            f"segment={self.segment})"
        )

    @property
    def num_buffered_frames(self) -> int:
        return self._len

    def feed(self, features: np.ndarray) -> None:
        features = np.asarray(features, dtype=np.float32)
        if features.ndim == 1:
            if features.size % self.feature_dim != 0:
                raise InvalidInput(
                    f"Flat feature array of size {features.size} is not a "
                    f"multiple of feature_dim {self.feature_dim}"
                )
            features = features.reshape(-1, self.feature_dim)
        if features.ndim != 2 or features.shape[1] != self.feature_dim:
            raise InvalidInput(
                f"Expected features of width {self.feature_dim}, "
                f"got shape {features.shape}"
            )
        with self.lock:
            if self._input_finished:
                raise InvalidInput("Cannot feed a stream after input_finished()")
            num = features.shape[0]
            if num == 0:
                return
            if self._len + num > self._capacity:
                self._grow(self._len + num)
            write_pos = (self._start + self._len) % self._capacity
            end_pos = write_pos + num
            if end_pos <= self._capacity:
                self._buffer[write_pos:end_pos] = features
            else:
                first = self._capacity - write_pos
                self._buffer[write_pos:] = features[:first]
                self._buffer[: end_pos % self._capacity] = features[first:]
            self._len += num
            self.num_frames_fed += num

    def _grow(self, needed: int) -> None:
        capacity = self._capacity
        while capacity < needed:
            capacity *= 2
        buffer = np.empty((capacity, self.feature_dim), dtype=np.float32)
        buffer[: self._len] = self._peek(self._len)
        self._buffer = buffer
        self._capacity = capacity
        self._start = 0

    def _peek(self, num_frames: int) -> np.ndarray:
        start = self._start
        end = start + num_frames
        if end <= self._capacity:
            return self._buffer[start:end]
        return np.concatenate(
            (self._buffer[start:], self._buffer[: end % self._capacity])
        )

    def input_finished(self) -> None:
        """Marks the end of input so a trailing partial chunk can be decoded."""
        with self.lock:
            self._input_finished = True

    def next_chunk_frames(self) -> int:
        with self.lock:
            return self._next_chunk_frames_locked()

    def _next_chunk_frames_locked(self) -> int:
        if self._len >= self.chunk_size:
            return self.chunk_size
        if self._input_finished:
            return self._len
        return 0

    def is_ready(self) -> bool:
        return self.next_chunk_frames() > 0

    def _check_available(self, num_frames: int) -> None:
        if num_frames <= 0:
            raise Underrun(f"Cannot consume {num_frames} frames")
        if self._len < num_frames:
            raise Underrun(
                f"Requested {num_frames} frames but only {self._len} are buffered"
            )

    def _drop(self, num_frames: int) -> None:
        self._start = (self._start + num_frames) % self._capacity
        self._len -= num_frames
        self.num_frames_consumed += num_frames

    def peek(self, num_frames: int) -> np.ndarray:
        """Copies the oldest ``num_frames`` rows without removing them."""
        with self.lock:
            self._check_available(num_frames)
            return self._peek(num_frames).copy()

    def commit(self, num_frames: int) -> None:
        """Removes ``num_frames`` rows previously returned by ``peek``."""
        with self.lock:
            self._check_available(num_frames)
            self._drop(num_frames)

    def consume(self, num_frames: int) -> np.ndarray:
        with self.lock:
            self._check_available(num_frames)
            chunk = self._peek(num_frames).copy()
            self._drop(num_frames)
            return chunk

    @property
    def is_final(self) -> bool:
        return self.endpoint_state.reached

    @property
    def is_finished(self) -> bool:
        """True once input is finished and every buffered frame was decoded."""
        with self.lock:
            return self._input_finished and self._len == 0

    def reset(self) -> None:
        self.frame_offset += self.decoder_result.num_frames
        self.decoder_result.reset()
        self.segment += 1
        self.endpoint_state.reset()
