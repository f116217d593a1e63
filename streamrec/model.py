from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Sequence

import torch
from huggingface_hub import hf_hub_download
from safetensors.torch import safe_open, save_file
from torch import Tensor, nn
from torch.nn.utils.rnn import pack_padded_sequence, pad_packed_sequence

from streamrec.config import ModelConfig
from streamrec.symbols import SymbolTable

WEIGHTS_FILE = "model.safetensors"
TOKENS_FILE = "tokens.txt"


class AcousticModel(ABC):
    """Batched feature -> log-probability function used by the recognizer.

    Per-stream state is opaque to the caller: ``init_state`` creates it and
    ``infer`` takes and returns one entry per batch row.
    """

    feature_dim: int
    chunk_size: int
    vocab_size: int
    subsampling_factor: int

    @abstractmethod
    def init_state(self) -> Any: ...

    @abstractmethod
    def infer(
        self, features: Tensor, lengths: Tensor, states: Sequence[Any]
    ) -> tuple[Tensor, Tensor, list[Any]]:
        """features: (B, T, F), lengths: (B,) -> log_probs (B, T', V), out_lengths (B,)."""

    def output_length(self, num_frames: int) -> int:
        return -(-num_frames // self.subsampling_factor)


class StreamingGruModel(nn.Module, AcousticModel):
    def __init__(self, config: ModelConfig):
        super(StreamingGruModel, self).__init__()
        self.config = config
        self.feature_dim = config.feat_in
        self.chunk_size = config.chunk_size
        self.vocab_size = config.vocab_size
        self.subsampling_factor = config.subsampling_factor
        self.num_layers = config.num_layers
        self.hidden_dim = config.hidden_dim

        self.input_proj = nn.Linear(
            config.feat_in * config.subsampling_factor, config.hidden_dim
        )
        self.rnn = nn.GRU(
            input_size=config.hidden_dim,
            hidden_size=config.hidden_dim,
            num_layers=config.num_layers,
            batch_first=True,
        )
        self.output = nn.Linear(config.hidden_dim, config.vocab_size)
        self.symbol_table: SymbolTable | None = None

    def forward(self):
        raise NotImplementedError

    def init_state(self) -> Tensor:
        param = next(self.parameters())
        return torch.zeros(
            self.num_layers,
            1,
            self.hidden_dim,
            device=param.device,
            dtype=param.dtype,
        )

    def _subsample(self, features: Tensor) -> Tensor:
        batch_size, num_frames, feat_dim = features.shape
        factor = self.subsampling_factor
        remainder = num_frames % factor
        if remainder:
            pad = features.new_zeros((batch_size, factor - remainder, feat_dim))
            features = torch.cat([features, pad], dim=1)
        return features.reshape(batch_size, -1, feat_dim * factor)

    @torch.inference_mode()
    def infer(
        self, features: Tensor, lengths: Tensor, states: Sequence[Tensor]
    ) -> tuple[Tensor, Tensor, list[Tensor]]:
        param = next(self.parameters())
        features = features.to(device=param.device, dtype=param.dtype)
        out_lengths = torch.div(
            lengths + self.subsampling_factor - 1,
            self.subsampling_factor,
            rounding_mode="floor",
        )
        x = self.input_proj(self._subsample(features))
        total_length = x.size(1)
        state_batch = torch.cat(list(states), dim=1)

        packed = pack_padded_sequence(
            x, out_lengths.cpu(), batch_first=True, enforce_sorted=False
        )
        packed_out, next_state = self.rnn(packed, state_batch)
        y, _ = pad_packed_sequence(
            packed_out, batch_first=True, total_length=total_length
        )
        log_probs = torch.log_softmax(self.output(y), dim=-1)
        next_states = [part.detach() for part in torch.split(next_state, 1, dim=1)]
        return log_probs.float(), out_lengths, next_states

    @classmethod
    def from_pretrained(cls, config: ModelConfig) -> "StreamingGruModel":
        model_path, tokens_path = _resolve_files(config.model)

        state_dict = dict()
        with safe_open(model_path, framework="pt", device="cpu") as fp:
            for key in fp.keys():
                state_dict[key] = fp.get_tensor(key)

        model = cls(config)
        model.load_state_dict(state_dict)
        model.symbol_table = SymbolTable.from_file(tokens_path)
        model.to(config.device)
        model.eval()
        return model

    def save_pretrained(self, directory: str | Path) -> None:
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        state_dict = {k: v.contiguous().cpu() for k, v in self.state_dict().items()}
        save_file(state_dict, str(directory / WEIGHTS_FILE))
        if self.symbol_table is not None:
            with (directory / TOKENS_FILE).open("w", encoding="utf-8") as handle:
                for idx in range(len(self.symbol_table)):
                    handle.write(f"{self.symbol_table.to_symbol(idx)} {idx}\n")


def _resolve_files(model: str) -> tuple[str, str]:
    if not model:
        raise ValueError("model_config.model is empty")
    local = Path(model)
    if local.is_dir():
        return str(local / WEIGHTS_FILE), str(local / TOKENS_FILE)
    model_path = hf_hub_download(repo_id=model, filename=WEIGHTS_FILE)
    tokens_path = hf_hub_download(repo_id=model, filename=TOKENS_FILE)
    return model_path, tokens_path
