from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from streamrec.errors import ParseError
from streamrec.symbols import SymbolTable


@dataclass(frozen=True)
class Hotword:
    token_ids: tuple[int, ...]
    score: float | None = None


class ContextState:
    __slots__ = (
        "token",
        "token_score",
        "node_score",
        "locked_score",
        "is_end",
        "level",
        "next",
        "fail",
    )

    def __init__(
        self,
        token: int,
        token_score: float,
        node_score: float,
        locked_score: float,
        is_end: bool,
        level: int,
    ):
        self.token = token
        self.token_score = token_score
        # Bonus credited along the path from the root to this node.
        self.node_score = node_score
        # Part of node_score that belongs to completed hotwords on this path.
        self.locked_score = locked_score
        self.is_end = is_end
        self.level = level
        self.next: dict[int, ContextState] = {}
        self.fail: ContextState | None = None

    @property
    def pending_score(self) -> float:
        return self.node_score - self.locked_score

    def __repr__(self) -> str:
        return (
            f"ContextState(token={self.token}, level={self.level}, "
            f"node_score={self.node_score}, is_end={self.is_end})"
        )


class ContextGraph:
    """Aho-Corasick automaton over hotword token sequences.

    Each matched token credits its bonus immediately. Leaving a partial match
    retracts the bonus that is not backed by the longest hotword prefix still
    matching (the failure state). Completing a hotword locks its bonus in.
    """

    def __init__(self, hotwords: Iterable[Hotword], default_score: float):
        self.default_score = default_score
        self.root = ContextState(
            token=-1,
            token_score=0.0,
            node_score=0.0,
            locked_score=0.0,
            is_end=False,
            level=0,
        )
        self.root.fail = self.root
        self.num_hotwords = 0
        for hotword in hotwords:
            self._insert(hotword)
        self._fill_fail()

    def _insert(self, hotword: Hotword) -> None:
        if not hotword.token_ids:
            return
        score = self.default_score if hotword.score is None else hotword.score
        node = self.root
        last = len(hotword.token_ids) - 1
        for idx, token in enumerate(hotword.token_ids):
            child = node.next.get(token)
            if child is None:
                node_score = node.node_score + score
                child = ContextState(
                    token=token,
                    token_score=score,
                    node_score=node_score,
                    locked_score=node.locked_score,
                    is_end=False,
                    level=node.level + 1,
                )
                node.next[token] = child
            if idx == last and not child.is_end:
                child.is_end = True
                self._lock_subtree(child)
            node = child
        self.num_hotwords += 1

    @staticmethod
    def _lock_subtree(end_node: ContextState) -> None:
        end_node.locked_score = end_node.node_score
        queue = deque(end_node.next.values())
        while queue:
            node = queue.popleft()
            if node.locked_score < end_node.node_score:
                node.locked_score = end_node.node_score
            queue.extend(node.next.values())

    def _fill_fail(self) -> None:
        queue: deque[ContextState] = deque()
        for child in self.root.next.values():
            child.fail = self.root
            queue.append(child)
        while queue:
            node = queue.popleft()
            for token, child in node.next.items():
                fail = node.fail
                while token not in fail.next and fail is not self.root:
                    fail = fail.fail
                child.fail = fail.next.get(token, self.root)
                queue.append(child)

    def forward_one_step(
        self, state: ContextState, token: int
    ) -> tuple[float, ContextState]:
        """Returns the bonus for extending ``state`` by ``token`` and the next state."""
        child = state.next.get(token)
        if child is not None:
            score = child.token_score
            node = child
        else:
            node = state.fail
            while token not in node.next and node is not self.root:
                node = node.fail
            node = node.next.get(token, self.root)
            score = node.node_score - state.pending_score
        if node.is_end and not node.next:
            return score, self.root
        return score, node

    def retract_score(self, state: ContextState) -> float:
        """Bonus credited so far that no completed hotword backs."""
        return state.pending_score


def parse_hotwords(text: str, symbol_table: SymbolTable) -> list[Hotword]:
    """Parses one hotword per line: whitespace-separated tokens, optional ``:score``."""
    hotwords: list[Hotword] = []
    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line:
            continue
        parts = line.split()
        score = None
        if parts[-1].startswith(":"):
            score_text = parts.pop()[1:]
            try:
                score = float(score_text)
            except ValueError:
                raise ParseError(
                    f"line {lineno}: invalid hotword score {score_text!r}"
                ) from None
            if not parts:
                raise ParseError(f"line {lineno}: hotword has no tokens")
        token_ids = []
        for token in parts:
            if token not in symbol_table:
                raise ParseError(f"line {lineno}: unknown token {token!r}")
            token_id = symbol_table[token]
            if token_id == symbol_table.blank_id:
                raise ParseError(f"line {lineno}: hotword contains the blank token")
            token_ids.append(token_id)
        hotwords.append(Hotword(tuple(token_ids), score))
    return hotwords


def load_hotwords_file(path: str | Path, symbol_table: SymbolTable) -> list[Hotword]:
    with Path(path).open("r", encoding="utf-8") as handle:
        return parse_hotwords(handle.read(), symbol_table)
