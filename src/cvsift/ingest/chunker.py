"""Sentence-aware chunker with token overlap.

Token counting uses a 4-chars-per-token approximation; no external
tokenizer dependency is required.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_SENTENCE_BREAK = re.compile(r"(?<=[.!?;])\s+|\n\s*\n+")
_WHITESPACE = re.compile(r"[ \t\r\f\v]+")


@dataclass
class Chunk:
    """One segment of a document, the unit of embedding. Never persisted as-is."""

    text: str
    source: str
    file_name: str
    chunk_index: int


class SentenceChunker:
    """Split text into ~``chunk_size``-token segments overlapping by ~``overlap`` tokens.

    Strategy:
    - Split on sentence breaks (``. ! ? ;`` followed by whitespace, or blank lines).
    - Greedily pack whole sentences into a segment up to the size limit.
    - Start the next segment with the trailing sentences of the previous one
      that fit inside the overlap budget.
    - A single sentence longer than a segment falls back to fixed windows.

    Default: 512 tokens / 50 tokens overlap.
    """

    def __init__(self, chunk_size: int = 512, overlap: int = 50) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if not 0 <= overlap < chunk_size:
            raise ValueError("overlap must be in [0, chunk_size)")
        self.chunk_size = chunk_size
        self.overlap = overlap

    @staticmethod
    def count_tokens(text: str) -> int:
        """Approximate token count: 4 characters ≈ 1 token."""
        return max(1, len(text) // 4)

    def split(self, text: str) -> list[str]:
        """Return the ordered text segments of *text* (empty list for blank text)."""
        if not text.strip():
            return []

        char_size = self.chunk_size * 4
        overlap_chars = self.overlap * 4

        segments: list[str] = []
        current: list[str] = []
        current_len = 0

        for sentence in self._sentences(text, char_size):
            added = len(sentence) + (1 if current else 0)
            if current and current_len + added > char_size:
                segments.append(" ".join(current))
                current = self._tail(current, overlap_chars)
                current_len = _joined_len(current)
                if current and current_len + len(sentence) + 1 > char_size:
                    current, current_len = [], 0
                added = len(sentence) + (1 if current else 0)
            current.append(sentence)
            current_len += added

        if current:
            segments.append(" ".join(current))
        return segments

    def chunk(self, text: str, source: str, file_name: str = "") -> list[Chunk]:
        """Split *text* into sequentially indexed Chunk objects for *source*."""
        return [
            Chunk(text=t, source=source, file_name=file_name, chunk_index=i)
            for i, t in enumerate(self.split(text))
        ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _sentences(self, text: str, char_size: int) -> list[str]:
        out: list[str] = []
        for raw in _SENTENCE_BREAK.split(text):
            sentence = _WHITESPACE.sub(" ", raw).replace("\n", " ").strip()
            if not sentence:
                continue
            if len(sentence) <= char_size:
                out.append(sentence)
            else:
                out.extend(self._split_fixed_window(sentence, char_size))
        return out

    def _split_fixed_window(self, text: str, char_size: int) -> list[str]:
        """Hard-cut an oversized sentence, preferring word boundaries."""
        pieces: list[str] = []
        pos = 0
        while pos < len(text):
            end = min(pos + char_size, len(text))
            if end < len(text):
                space = text.rfind(" ", pos + char_size // 2, end)
                if space != -1:
                    end = space
            piece = text[pos:end].strip()
            if piece:
                pieces.append(piece)
            pos = end
        return pieces

    @staticmethod
    def _tail(sentences: list[str], budget: int) -> list[str]:
        """Trailing sentences of *sentences* whose joined length fits *budget*."""
        tail: list[str] = []
        total = 0
        for sentence in reversed(sentences[1:]):
            cost = len(sentence) + (1 if tail else 0)
            if total + cost > budget:
                break
            tail.insert(0, sentence)
            total += cost
        return tail


def _joined_len(parts: list[str]) -> int:
    return sum(len(p) for p in parts) + max(0, len(parts) - 1)
