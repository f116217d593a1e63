from dataclasses import dataclass, field
from typing import Any, Iterable, NamedTuple

from streamrec.engine.context_graph import ContextGraph, ContextState

ROOT = -1


class TokenArena:
    """Append-only store of emitted tokens shared by all paths of one stream.

    A path is the index of its last token node; tokens are recovered by
    following parent links. Token sequences are also interned so two paths
    that emitted the same tokens at different frames share a ``seq`` id.
    """

    def __init__(self):
        self.clear()

    def clear(self) -> None:
        self._parent: list[int] = []
        self._token: list[int] = []
        self._frame: list[int] = []
        self._seq_parent: list[int] = []
        self._seq_token: list[int] = []
        self._seq_index: dict[tuple[int, int], int] = {}

    def __len__(self) -> int:
        return len(self._parent)

    def intern(self, seq: int, token: int) -> int:
        key = (seq, token)
        seq_id = self._seq_index.get(key)
        if seq_id is None:
            seq_id = len(self._seq_parent)
            self._seq_parent.append(seq)
            self._seq_token.append(token)
            self._seq_index[key] = seq_id
        return seq_id

    def append(self, node: int, token: int, frame: int) -> int:
        self._parent.append(node)
        self._token.append(token)
        self._frame.append(frame)
        return len(self._parent) - 1

    def frame(self, node: int) -> int:
        return self._frame[node] if node != ROOT else -1

    def tokens(self, node: int) -> list[int]:
        out = []
        while node != ROOT:
            out.append(self._token[node])
            node = self._parent[node]
        out.reverse()
        return out

    def frames(self, node: int) -> list[int]:
        out = []
        while node != ROOT:
            out.append(self._frame[node])
            node = self._parent[node]
        out.reverse()
        return out

    def sequence(self, seq: int) -> tuple[int, ...]:
        out = []
        while seq != ROOT:
            out.append(self._seq_token[seq])
            seq = self._seq_parent[seq]
        out.reverse()
        return tuple(out)

    def compare(self, a: int, b: int) -> int:
        """Lexicographic order of two interned sequences of equal length.

        Walks back only to the longest common prefix, which interning makes
        a shared id.
        """
        order = 0
        while a != b:
            token_a, token_b = self._seq_token[a], self._seq_token[b]
            if token_a != token_b:
                order = -1 if token_a < token_b else 1
            a, b = self._seq_parent[a], self._seq_parent[b]
        return order

    def last_token(self, seq: int) -> int | None:
        return self._seq_token[seq] if seq != ROOT else None

    def compact(self, hyps: Iterable["Hypothesis"]) -> list["Hypothesis"]:
        """Drops nodes no live hypothesis reaches; returns the remapped hypotheses."""
        hyps = list(hyps)
        old_parent, old_token, old_frame = self._parent, self._token, self._frame
        old_seq_parent, old_seq_token = self._seq_parent, self._seq_token
        self.clear()
        node_map: dict[int, int] = {ROOT: ROOT}
        seq_map: dict[int, int] = {ROOT: ROOT}

        def copy_node(node: int) -> int:
            chain = []
            while node not in node_map:
                chain.append(node)
                node = old_parent[node]
            for old in reversed(chain):
                node_map[old] = self.append(
                    node_map[old_parent[old]], old_token[old], old_frame[old]
                )
            return node_map[chain[0]] if chain else node_map[node]

        def copy_seq(seq: int) -> int:
            chain = []
            while seq not in seq_map:
                chain.append(seq)
                seq = old_seq_parent[seq]
            for old in reversed(chain):
                seq_map[old] = self.intern(seq_map[old_seq_parent[old]], old_seq_token[old])
            return seq_map[chain[0]] if chain else seq_map[seq]

        return [
            hyp._replace(node=copy_node(hyp.node), seq=copy_seq(hyp.seq))
            for hyp in hyps
        ]


class Hypothesis(NamedTuple):
    log_prob: float
    node: int = ROOT
    seq: int = ROOT
    num_tokens: int = 0
    context_state: ContextState | None = None

    def settled_log_prob(self) -> float:
        if self.context_state is None:
            return self.log_prob
        return self.log_prob - self.context_state.pending_score


@dataclass
class DecoderResult:
    hyps: list[Hypothesis]
    arena: TokenArena = field(default_factory=TokenArena)
    # Output frames decoded since the last reset.
    num_frames: int = 0
    model_state: Any = None
    context_graph: ContextGraph | None = None

    def best(self) -> Hypothesis:
        return max(
            self.hyps,
            key=lambda h: (h.settled_log_prob(), -h.num_tokens),
        )

    def trailing_blank_frames(self, hyp: Hypothesis | None = None) -> int:
        hyp = self.best() if hyp is None else hyp
        return self.num_frames - (self.arena.frame(hyp.node) + 1)

    def reset(self) -> None:
        """Back to the empty hypothesis; model state and hotwords survive."""
        self.arena.clear()
        self.num_frames = 0
        root = None
        if self.context_graph is not None:
            root = self.context_graph.root
        self.hyps = [Hypothesis(0.0, context_state=root)]
