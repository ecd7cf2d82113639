"""
Word-window Text Chunker.

Splits long text into overlapping windows measured in words. Windows are
computed eagerly; each carries its word range so callers can map a chunk
back to the source text.
"""

import math
from dataclasses import dataclass
from typing import Any

DEFAULT_WINDOW_WORDS = 1000
DEFAULT_OVERLAP_WORDS = 100


@dataclass(frozen=True)
class TextSegment:
    """One window over the source words. ``word_end`` is exclusive."""

    text: str
    word_start: int
    word_end: int
    word_count: int
    index: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "word_start": self.word_start,
            "word_end": self.word_end,
            "word_count": self.word_count,
            "index": self.index,
        }


def chunk_text(
    text: str,
    window_words: int = DEFAULT_WINDOW_WORDS,
    overlap_words: int = DEFAULT_OVERLAP_WORDS,
) -> list[TextSegment]:
    """
    Split text into overlapping word windows.

    Args:
        text: Source text
        window_words: Words per window (at least 1)
        overlap_words: Words repeated at the start of the next window

    Returns:
        Segments in order. Empty or whitespace-only text yields no segments;
        text that fits one window yields a single segment equal to the input.
    """
    if window_words < 1:
        raise ValueError(f"window_words must be >= 1, got {window_words}")
    if overlap_words < 0:
        raise ValueError(f"overlap_words must be >= 0, got {overlap_words}")

    words = text.split()
    if not words:
        return []

    if len(words) <= window_words:
        return [
            TextSegment(
                text=text,
                word_start=0,
                word_end=len(words),
                word_count=len(words),
                index=0,
            )
        ]

    # Overlap >= window would never advance; always move at least one word
    step = max(1, window_words - overlap_words)

    segments: list[TextSegment] = []
    start = 0
    while True:
        end = min(start + window_words, len(words))
        window = words[start:end]
        segments.append(
            TextSegment(
                text=" ".join(window),
                word_start=start,
                word_end=end,
                word_count=len(window),
                index=len(segments),
            )
        )
        if end >= len(words):
            break
        start += step

    return segments


def estimate_tokens(text: str) -> int:
    """Rough token estimate (about 0.75 words per token)."""
    words = len(text.split())
    return math.ceil(words / 0.75)
