"""
Unit Tests for the Word-window Chunker.
"""

import pytest

from src.ingestion.chunking import chunk_text, estimate_tokens


def words(n: int) -> str:
    return " ".join(f"w{i}" for i in range(n))


class TestChunkText:
    """Test cases for chunk_text."""

    def test_empty_text_has_no_segments(self) -> None:
        assert chunk_text("") == []
        assert chunk_text("   \n\t ") == []

    def test_short_text_is_one_segment_equal_to_input(self) -> None:
        text = "Account  A1\nbelongs to   Party P1"
        segments = chunk_text(text, window_words=10, overlap_words=2)

        assert len(segments) == 1
        assert segments[0].text == text
        assert segments[0].word_start == 0
        assert segments[0].word_end == 6
        assert segments[0].word_count == 6

    def test_exactly_one_window(self) -> None:
        segments = chunk_text(words(10), window_words=10, overlap_words=3)
        assert len(segments) == 1

    def test_windows_overlap(self) -> None:
        segments = chunk_text(words(25), window_words=10, overlap_words=3)

        assert [(s.word_start, s.word_end) for s in segments] == [(0, 10), (7, 17), (14, 24), (21, 25)]
        assert [s.index for s in segments] == [0, 1, 2, 3]
        # Last three words of one window open the next
        assert segments[0].text.split()[-3:] == segments[1].text.split()[:3]

    def test_every_word_is_covered(self) -> None:
        text = words(103)
        segments = chunk_text(text, window_words=20, overlap_words=5)

        covered = set()
        for segment in segments:
            covered.update(range(segment.word_start, segment.word_end))
        assert covered == set(range(103))
        assert segments[-1].word_end == 103

    def test_no_overlap(self) -> None:
        segments = chunk_text(words(20), window_words=5, overlap_words=0)

        assert len(segments) == 4
        assert all(s.word_count == 5 for s in segments)

    def test_overlap_not_smaller_than_window_still_advances(self) -> None:
        segments = chunk_text(words(5), window_words=2, overlap_words=5)

        assert [s.word_start for s in segments] == [0, 1, 2, 3]
        assert segments[-1].word_end == 5

    def test_invalid_arguments(self) -> None:
        with pytest.raises(ValueError):
            chunk_text("a b c", window_words=0)
        with pytest.raises(ValueError):
            chunk_text("a b c", window_words=2, overlap_words=-1)

    def test_to_dict(self) -> None:
        segment = chunk_text("one two", window_words=5)[0]

        assert segment.to_dict() == {
            "text": "one two",
            "word_start": 0,
            "word_end": 2,
            "word_count": 2,
            "index": 0,
        }


def test_estimate_tokens() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("one two three") == 4
