"""Text Chunker - carves input text into translation-sized work units."""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Optional


_SENTENCE_END_RE = re.compile(r"[.!?](?=\s)|[。！？」』]")
_WHITESPACE_RE = re.compile(r"\s")


@dataclass(frozen=True)
class WorkUnit:
    """One slice of the input submitted as a single turn."""

    index: int
    source_text: str
    start: int  # offset into the original input
    end: int    # exclusive; the next unit starts carving here


class Chunker:
    """
    Deterministic carver: the same text and the same size history always yield
    the same unit boundaries, which is what makes resume by offset safe.

    Break preference inside the size window: paragraph break, line break,
    sentence end, whitespace, then a hard cut. A soft break is only taken when it
    keeps at least ``min_break_ratio`` of the window.
    """

    def __init__(self, min_break_ratio: float = 0.5):
        self.min_break_ratio = min_break_ratio

    def carve(self, text: str, offset: int, index: int, chunk_size: int) -> Optional[WorkUnit]:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        start = offset
        length = len(text)
        while start < length and text[start].isspace():
            start += 1
        if start >= length:
            return None

        if length - start <= chunk_size:
            end = length
        else:
            end = start + self._find_break(text[start:start + chunk_size])

        return WorkUnit(
            index=index,
            source_text=text[start:end].rstrip(),
            start=start,
            end=end,
        )

    def _find_break(self, window: str) -> int:
        floor = int(len(window) * self.min_break_ratio)

        idx = window.rfind("\n\n")
        if idx >= floor:
            return idx + 2
        idx = window.rfind("\n")
        if idx >= floor:
            return idx + 1

        last_sentence = None
        for match in _SENTENCE_END_RE.finditer(window):
            last_sentence = match
        if last_sentence is not None and last_sentence.end() >= floor:
            return last_sentence.end()

        last_space = None
        for match in _WHITESPACE_RE.finditer(window):
            last_space = match
        if last_space is not None and last_space.end() >= floor:
            return last_space.end()

        return len(window)
