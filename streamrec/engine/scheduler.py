from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Iterable
import logging
import threading

import numpy as np
import torch

from streamrec.engine.stream import Stream
from streamrec.errors import Underrun


@dataclass
class Batch:
    streams: list[Stream]
    features: torch.Tensor
    lengths: torch.Tensor
    states: list[Any]
    num_frames: list[int]

    @property
    def size(self) -> int:
        return len(self.streams)


class Scheduler:
    """Tracks live streams and turns ready ones into padded model batches."""

    def __init__(
        self,
        max_batch_size: int = 32,
        device: str | torch.device = "cpu",
        logger: logging.Logger | None = None,
    ):
        self.max_batch_size = max_batch_size
        self.device = torch.device(device)
        self.logger = logger or logging.getLogger(__name__)
        self.active: Deque[Stream] = deque()
        self._lock = threading.Lock()

    def add(self, stream: Stream) -> None:
        with self._lock:
            self.active.append(stream)

    def release(self, stream: Stream) -> None:
        with self._lock:
            if stream in self.active:
                self.active.remove(stream)

    def active_streams(self) -> list[Stream]:
        with self._lock:
            return list(self.active)

    def counts(self) -> dict[str, int]:
        with self._lock:
            streams = list(self.active)
        ready = sum(1 for stream in streams if stream.is_ready())
        return {"active": len(streams), "ready": ready}

    def ready_streams(self, limit: int | None = None) -> list[Stream]:
        """Ready streams in round-robin order, at most ``limit`` of them."""
        limit = self.max_batch_size if limit is None else limit
        picked: list[Stream] = []
        with self._lock:
            for _ in range(len(self.active)):
                if len(picked) >= limit:
                    break
                stream = self.active.popleft()
                self.active.append(stream)
                if stream.is_ready():
                    picked.append(stream)
        return picked

    def pack(self, streams: Iterable[Stream]) -> Batch | None:
        """Peeks one chunk per ready stream and pads them to a common length.

        The frames stay buffered until ``commit`` is called for the batch.
        Streams that are not ready, or appear twice, are left untouched.
        """
        batch_streams: list[Stream] = []
        chunks: list[np.ndarray] = []
        seen: set[int] = set()
        for stream in streams:
            if stream.stream_id in seen:
                self.logger.warning(
                    "Stream %s appears more than once in a batch; skipping duplicate",
                    stream.stream_id,
                )
                continue
            num_frames = stream.next_chunk_frames()
            if num_frames == 0:
                self.logger.warning(
                    "Stream %s is not ready; leaving it out of the batch",
                    stream.stream_id,
                )
                continue
            try:
                chunk = stream.peek(num_frames)
            except Underrun:
                self.logger.exception(
                    "Stream %s lost frames between readiness check and peek",
                    stream.stream_id,
                )
                continue
            seen.add(stream.stream_id)
            batch_streams.append(stream)
            chunks.append(chunk)

        if not batch_streams:
            return None

        lengths = [chunk.shape[0] for chunk in chunks]
        max_len = max(lengths)
        feat_dim = chunks[0].shape[1]
        features = torch.zeros(
            (len(chunks), max_len, feat_dim), dtype=torch.float32, device=self.device
        )
        for idx, (chunk, length) in enumerate(zip(chunks, lengths)):
            features[idx, :length].copy_(torch.from_numpy(chunk))
        length_tensor = torch.tensor(lengths, dtype=torch.int64, device=self.device)
        states = [stream.decoder_result.model_state for stream in batch_streams]
        return Batch(batch_streams, features, length_tensor, states, lengths)

    @staticmethod
    def unpack(
        batch: Batch,
        log_probs: torch.Tensor,
        out_lengths: torch.Tensor,
        next_states: list[Any],
    ) -> list[tuple[Stream, torch.Tensor]]:
        """Stores model states back and slices away padded output frames."""
        if log_probs.size(0) != batch.size or len(next_states) != batch.size:
            raise RuntimeError(
                f"Model returned {log_probs.size(0)} rows and {len(next_states)} "
                f"states for a batch of {batch.size}"
            )
        lengths = out_lengths.tolist()
        out: list[tuple[Stream, torch.Tensor]] = []
        for idx, stream in enumerate(batch.streams):
            out.append((stream, log_probs[idx, : int(lengths[idx])]))
        for stream, state in zip(batch.streams, next_states):
            stream.decoder_result.model_state = state
        return out

    @staticmethod
    def commit(batch: Batch) -> None:
        """Drops the packed chunks from their streams once the model call succeeded."""
        for stream, num_frames in zip(batch.streams, batch.num_frames):
            stream.commit(num_frames)
