from abc import ABC, abstractmethod
from pathlib import Path

import torch
from safetensors.torch import safe_open, save_file

from streamrec.config import LMConfig
from streamrec.errors import ConfigurationError


class LanguageModel(ABC):
    """Token-level LM used for shallow fusion in beam search."""

    @abstractmethod
    def validate(self, vocab_size: int) -> None:
        """Raises ConfigurationError if the LM cannot score this vocabulary."""

    @abstractmethod
    def next_token_log_probs(self, last_token: int | None) -> torch.Tensor:
        """Log-probabilities over the vocabulary given the previous token."""


class BigramLanguageModel(LanguageModel):
    """Bigram LM stored as ``log_probs[V + 1, V]``; the last row is the start state."""

    def __init__(self, log_probs: torch.Tensor):
        self.log_probs = log_probs.float()

    @classmethod
    def from_config(cls, config: LMConfig) -> "BigramLanguageModel":
        return cls.from_file(config.model)

    @classmethod
    def from_file(cls, path: str | Path) -> "BigramLanguageModel":
        with safe_open(str(path), framework="pt", device="cpu") as fp:
            if "log_probs" not in fp.keys():
                raise ConfigurationError(f"{path} has no 'log_probs' tensor")
            log_probs = fp.get_tensor("log_probs")
        return cls(log_probs)

    def save(self, path: str | Path) -> None:
        save_file({"log_probs": self.log_probs.contiguous()}, str(path))

    @property
    def vocab_size(self) -> int:
        return self.log_probs.size(1)

    def validate(self, vocab_size: int) -> None:
        if self.log_probs.dim() != 2:
            raise ConfigurationError(
                f"Bigram LM must be 2-D. Given shape {tuple(self.log_probs.shape)}"
            )
        if self.log_probs.size(0) != self.vocab_size + 1:
            raise ConfigurationError(
                "Bigram LM needs one row per token plus a start row. "
                f"Given shape {tuple(self.log_probs.shape)}"
            )
        if self.vocab_size != vocab_size:
            raise ConfigurationError(
                f"LM vocabulary ({self.vocab_size}) does not match "
                f"model vocabulary ({vocab_size})"
            )
        if not torch.isfinite(self.log_probs).any(dim=-1).all():
            raise ConfigurationError("Bigram LM has a row without finite entries")

    def next_token_log_probs(self, last_token: int | None) -> torch.Tensor:
        if last_token is None:
            return self.log_probs[-1]
        return self.log_probs[last_token]
