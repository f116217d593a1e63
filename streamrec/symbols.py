import logging
import re
from pathlib import Path
from typing import Iterable, Sequence

BLANK_SYMBOLS = ("<blk>", "<blank>")
_BYTE_TOKEN = re.compile(r"^<0x([0-9A-Fa-f]{2})>$")

logger = logging.getLogger(__name__)


class SymbolTable:
    """Bidirectional token <-> id map read from a ``tokens.txt`` file.

    Each line holds ``symbol id``. The blank symbol is ``<blk>`` when present,
    otherwise id 0.
    """

    def __init__(self, symbols: Iterable[tuple[str, int]]):
        self._sym2id: dict[str, int] = {}
        self._id2sym: dict[int, str] = {}
        for sym, idx in symbols:
            if sym in self._sym2id:
                raise ValueError(f"Duplicate symbol {sym!r} in symbol table")
            if idx in self._id2sym:
                raise ValueError(f"Duplicate id {idx} in symbol table")
            self._sym2id[sym] = idx
            self._id2sym[idx] = sym
        if not self._id2sym:
            raise ValueError("Empty symbol table")

        self.blank_id = 0
        for sym in BLANK_SYMBOLS:
            if sym in self._sym2id:
                self.blank_id = self._sym2id[sym]
                break

    @classmethod
    def from_tokens(cls, tokens: Sequence[str]) -> "SymbolTable":
        return cls((tok, idx) for idx, tok in enumerate(tokens))

    @classmethod
    def from_file(cls, path: str | Path) -> "SymbolTable":
        entries: list[tuple[str, int]] = []
        with Path(path).open("r", encoding="utf-8") as handle:
            for lineno, line in enumerate(handle, start=1):
                line = line.rstrip("\n")
                if not line.strip():
                    continue
                parts = line.split()
                if len(parts) == 1:
                    # A bare id means the symbol itself is a space.
                    sym, idx = " ", parts[0]
                elif len(parts) == 2:
                    sym, idx = parts
                else:
                    raise ValueError(f"{path}:{lineno}: expected 'symbol id'")
                entries.append((sym, int(idx)))
        table = cls(entries)
        logger.debug("Loaded %d symbols from %s", len(table), path)
        return table

    def __len__(self) -> int:
        return len(self._id2sym)

    def __contains__(self, sym: str) -> bool:
        return sym in self._sym2id

    def __getitem__(self, sym: str) -> int:
        return self._sym2id[sym]

    def to_symbol(self, idx: int) -> str:
        return self._id2sym[idx]

    def detokenize(self, token_ids: Sequence[int]) -> str:
        return tokens_to_text([self._id2sym[i] for i in token_ids])


def tokens_to_text(tokens: Sequence[str]) -> str:
    """Joins SentencePiece pieces, merging ``<0xNN>`` byte pieces into UTF-8."""
    out = bytearray()
    for tok in tokens:
        match = _BYTE_TOKEN.match(tok)
        if match is not None:
            out.append(int(match.group(1), 16))
        else:
            out.extend(tok.encode("utf-8"))
    text = out.decode("utf-8", errors="replace").replace("▁", " ")
    return text.strip()
