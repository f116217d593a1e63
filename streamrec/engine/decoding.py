from abc import ABC, abstractmethod
from functools import cmp_to_key
from itertools import groupby
from typing import Iterable
import logging

import numpy as np
import torch

from streamrec.config import RecognizerConfig
from streamrec.engine.context_graph import ContextGraph, ContextState
from streamrec.engine.hypothesis import DecoderResult, Hypothesis, TokenArena
from streamrec.errors import ConfigurationError
from streamrec.lm import LanguageModel

# Arena nodes tolerated before unreachable ones are dropped.
COMPACT_MIN_NODES = 4096


class DecodingPolicy(ABC):
    method: str

    def __init__(
        self,
        blank_id: int,
        vocab_size: int,
        blank_penalty: float = 0.0,
        logger: logging.Logger | None = None,
    ):
        self.blank_id = blank_id
        self.vocab_size = vocab_size
        self.blank_penalty = blank_penalty
        self.logger = logger or logging.getLogger(__name__)

    def init_result(self, context_graph: ContextGraph | None = None) -> DecoderResult:
        result = DecoderResult(hyps=[], context_graph=context_graph)
        self.reset(result)
        return result

    def reset(self, result: DecoderResult) -> None:
        result.reset()

    def _prepare(self, log_probs: torch.Tensor) -> np.ndarray:
        if log_probs.dim() != 2 or log_probs.size(1) != self.vocab_size:
            raise ValueError(
                f"Expected log_probs of shape (T, {self.vocab_size}), "
                f"got {tuple(log_probs.shape)}"
            )
        scores = log_probs.detach().to(device="cpu", dtype=torch.float64).numpy()
        if self.blank_penalty:
            scores = scores.copy()
            scores[:, self.blank_id] -= self.blank_penalty
        return scores

    @abstractmethod
    def decode(self, log_probs: torch.Tensor, result: DecoderResult) -> None:
        """Advances ``result`` by the frames in ``log_probs`` of shape (T, V)."""


class GreedySearch(DecodingPolicy):
    method = "greedy_search"

    def decode(self, log_probs: torch.Tensor, result: DecoderResult) -> None:
        scores = self._prepare(log_probs)
        hyp = result.hyps[0]
        arena = result.arena
        log_prob = hyp.log_prob
        node = hyp.node
        num_tokens = hyp.num_tokens

        best_ids = np.argmax(scores, axis=-1)
        for t, token in enumerate(best_ids.tolist()):
            log_prob += float(scores[t, token])
            if token == self.blank_id:
                continue
            node = arena.append(node, token, result.num_frames + t)
            num_tokens += 1

        result.hyps = [
            hyp._replace(log_prob=log_prob, node=node, num_tokens=num_tokens)
        ]
        result.num_frames += scores.shape[0]


class ModifiedBeamSearch(DecodingPolicy):
    """Frame-synchronous beam search emitting at most one token per frame.

    Paths are scored with the acoustic log-probability, the hotword bonus of
    the stream's context graph and, when configured, a shallow-fusion LM.
    """

    method = "modified_beam_search"

    def __init__(
        self,
        blank_id: int,
        vocab_size: int,
        max_active_paths: int,
        blank_penalty: float = 0.0,
        lm: LanguageModel | None = None,
        lm_scale: float = 0.0,
        logger: logging.Logger | None = None,
    ):
        super().__init__(blank_id, vocab_size, blank_penalty, logger)
        if max_active_paths <= 0:
            raise ConfigurationError(
                f"max_active_paths must be positive. Given: {max_active_paths}"
            )
        self.max_active_paths = max_active_paths
        self.lm = lm
        self.lm_scale = lm_scale
        if lm is not None:
            lm.validate(vocab_size)

    def decode(self, log_probs: torch.Tensor, result: DecoderResult) -> None:
        scores = self._prepare(log_probs)
        hyps = result.hyps
        for t in range(scores.shape[0]):
            hyps = self._step(scores[t], hyps, result, result.num_frames + t)
        result.num_frames += scores.shape[0]

        arena = result.arena
        live = sum(h.num_tokens for h in hyps)
        if len(arena) > max(COMPACT_MIN_NODES, 2 * live):
            hyps = arena.compact(hyps)
        result.hyps = hyps

    def _candidate_scores(
        self, row: np.ndarray, hyp: Hypothesis, result: DecoderResult
    ) -> np.ndarray:
        cand = hyp.log_prob + row
        blank_score = cand[self.blank_id]
        if self.lm is not None:
            last = result.arena.last_token(hyp.seq)
            lm_row = self.lm.next_token_log_probs(last).to(torch.float64).numpy()
            cand = cand + self.lm_scale * lm_row
        graph = result.context_graph
        if graph is not None and hyp.context_state is not None:
            state = hyp.context_state
            # Tokens outside the automaton fall back to the root.
            cand = cand - state.pending_score
            for token in _reachable_tokens(state, graph):
                bonus, _ = graph.forward_one_step(state, token)
                cand[token] += bonus + state.pending_score
        cand[self.blank_id] = blank_score
        return cand

    def _step(
        self,
        row: np.ndarray,
        hyps: list[Hypothesis],
        result: DecoderResult,
        frame: int,
    ) -> list[Hypothesis]:
        arena = result.arena
        graph = result.context_graph
        vocab = self.vocab_size
        flat = np.concatenate(
            [self._candidate_scores(row, hyp, result) for hyp in hyps]
        )
        k = min(self.max_active_paths, flat.size)
        threshold = np.partition(flat, flat.size - k)[flat.size - k]
        selected = np.flatnonzero(flat >= threshold)

        merged: dict[int, Hypothesis] = {}
        for index in selected.tolist():
            prev = hyps[index // vocab]
            token = index % vocab
            score = float(flat[index])
            if token == self.blank_id:
                new_hyp = prev._replace(log_prob=score)
            else:
                context_state = prev.context_state
                if graph is not None and context_state is not None:
                    _, context_state = graph.forward_one_step(context_state, token)
                new_hyp = Hypothesis(
                    log_prob=score,
                    node=arena.append(prev.node, token, frame),
                    seq=arena.intern(prev.seq, token),
                    num_tokens=prev.num_tokens + 1,
                    context_state=context_state,
                )
            existing = merged.get(new_hyp.seq)
            if existing is None:
                merged[new_hyp.seq] = new_hyp
                continue
            total = float(np.logaddexp(existing.log_prob, new_hyp.log_prob))
            keep = new_hyp if new_hyp.log_prob > existing.log_prob else existing
            merged[new_hyp.seq] = keep._replace(log_prob=total)

        return _rank(merged.values(), arena, self.max_active_paths)


def _rank(
    hyps: Iterable[Hypothesis], arena: TokenArena, limit: int
) -> list[Hypothesis]:
    """Best ``limit`` paths by score, then fewer tokens, then token ids."""
    ordered = sorted(hyps, key=lambda h: (-h.log_prob, h.num_tokens))
    by_tokens = cmp_to_key(lambda a, b: arena.compare(a.seq, b.seq))
    ranked: list[Hypothesis] = []
    for _, group in groupby(ordered, key=lambda h: (h.log_prob, h.num_tokens)):
        tied = list(group)
        if len(tied) > 1:
            tied.sort(key=by_tokens)
        ranked.extend(tied)
        if len(ranked) >= limit:
            break
    return ranked[:limit]


def _reachable_tokens(state: ContextState, graph: ContextGraph) -> set[int]:
    tokens = set(state.next)
    node = state
    while node is not graph.root:
        node = node.fail
        tokens.update(node.next)
    return tokens


def create_decoding_policy(
    config: RecognizerConfig,
    blank_id: int,
    vocab_size: int,
    lm: LanguageModel | None = None,
    logger: logging.Logger | None = None,
) -> DecodingPolicy:
    if config.decoding_method == "greedy_search":
        if lm is not None:
            (logger or logging.getLogger(__name__)).warning(
                "A language model is only used with modified_beam_search; ignoring it."
            )
        return GreedySearch(
            blank_id, vocab_size, blank_penalty=config.blank_penalty, logger=logger
        )
    if config.decoding_method == "modified_beam_search":
        return ModifiedBeamSearch(
            blank_id,
            vocab_size,
            max_active_paths=config.max_active_paths,
            blank_penalty=config.blank_penalty,
            lm=lm,
            lm_scale=config.lm_config.scale,
            logger=logger,
        )
    raise ConfigurationError(f"Unsupported decoding method: {config.decoding_method}")
