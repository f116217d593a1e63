"""Shared fixtures: a scripted acoustic model whose frames name their token."""

import numpy as np
import pytest
import torch

from streamrec.config import (
    EndpointConfig,
    EndpointRule,
    FeatureConfig,
    ModelConfig,
    RecognizerConfig,
)
from streamrec.engine.recognizer import Recognizer
from streamrec.model import AcousticModel
from streamrec.symbols import SymbolTable

TOKENS = ["<blk>", "▁HE", "LL", "O", "▁WORLD", "hi"]
BLK, HE, LL, O, WORLD, HI = range(len(TOKENS))
CHUNK_SIZE = 4


class ScriptedModel(AcousticModel):
    """Each feature row is a score vector over the vocabulary.

    The log-probabilities of a row depend on that row only, and the per-stream
    state counts the frames the model has seen.
    """

    feature_dim = len(TOKENS)
    vocab_size = len(TOKENS)
    chunk_size = CHUNK_SIZE
    subsampling_factor = 1

    def __init__(self):
        self.calls: list[int] = []
        # Number of upcoming infer calls that raise.
        self.failures = 0

    def init_state(self):
        return 0

    def infer(self, features, lengths, states):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("device lost")
        self.calls.append(features.size(0))
        log_probs = torch.log_softmax(features.to(torch.float64), dim=-1)
        next_states = [
            state + int(length) for state, length in zip(states, lengths.tolist())
        ]
        return log_probs, lengths.clone(), next_states


def frames(*token_ids: int, peak: float = 8.0) -> np.ndarray:
    """One feature row per token id, peaked at that id."""
    out = np.zeros((len(token_ids), len(TOKENS)), dtype=np.float32)
    for row, token in enumerate(token_ids):
        out[row, token] = peak
    return out


def make_config(**overrides) -> RecognizerConfig:
    config = RecognizerConfig(
        feat_config=FeatureConfig(feature_dim=len(TOKENS), frame_shift_ms=10.0),
        model_config=ModelConfig(
            feat_in=len(TOKENS),
            subsampling_factor=1,
            chunk_size=CHUNK_SIZE,
            vocab_size=len(TOKENS),
        ),
        endpoint_config=EndpointConfig(
            rule1=EndpointRule(True, 0.025, 0.0),
            rule2=EndpointRule(True, 10.0, 0.0),
            rule3=EndpointRule(True, 0.0, 1.0),
        ),
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


@pytest.fixture
def symbol_table() -> SymbolTable:
    return SymbolTable.from_tokens(TOKENS)


@pytest.fixture
def model() -> ScriptedModel:
    return ScriptedModel()


@pytest.fixture
def make_recognizer(model, symbol_table):
    def _make(**overrides) -> Recognizer:
        return Recognizer(make_config(**overrides), model, symbol_table=symbol_table)

    return _make
