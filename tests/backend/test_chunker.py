"""
Unit tests for the Chunker module.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from chunker import (
    Chunker,
    ChunkingResult,
    clamp_intensity,
    effort_for_intensity,
    split_sentences,
)


class TestChunker:
    """Test suite for the Chunker class."""

    def setup_method(self):
        """Set up test fixtures."""
        self.chunker = Chunker(max_chunk_size=100)

    def test_chunker_initialization(self):
        """Test that chunker initializes with correct parameters."""
        assert Chunker().max_chunk_size == 1000
        assert Chunker(max_chunk_size=200).max_chunk_size == 200

    def test_chunk_empty_text(self):
        """Test chunking empty text returns no chunks."""
        for text in ("", "   ", "\n\n\t"):
            result = self.chunker.chunk(text)
            assert isinstance(result, ChunkingResult)
            assert result.chunks == []

    def test_single_paragraph_splits_into_sentences(self):
        """Text without paragraph breaks yields one chunk per sentence."""
        result = Chunker().chunk("Alpha talks about cats. Beta talks about dogs.")

        assert [c.content for c in result.chunks] == [
            "Alpha talks about cats.",
            "Beta talks about dogs.",
        ]
        assert [c.title for c in result.chunks] == ["Chunk 1", "Chunk 2"]

    def test_short_paragraphs_are_grouped(self):
        """Paragraphs accumulate until the size threshold is reached."""
        text = "First paragraph.\n\nSecond paragraph.\n\nThird."
        result = self.chunker.chunk(text)

        assert len(result.chunks) == 1
        assert result.chunks[0].content == "First paragraph.\n\nSecond paragraph.\n\nThird."

    def test_paragraphs_split_when_threshold_exceeded(self):
        """A paragraph that would overflow the current chunk starts a new one."""
        first = "word " * 15
        second = "term " * 15
        result = self.chunker.chunk(f"{first}\n\n{second}")

        assert len(result.chunks) == 2
        assert result.chunks[0].content == first.strip()
        assert result.chunks[1].content == second.strip()

    def test_chunks_respect_max_size(self):
        """Every chunk stays within the configured size."""
        paragraph = "Lorem ipsum dolor sit amet, consectetur adipiscing elit. " * 10
        text = f"{paragraph}\n\n{paragraph}"
        result = self.chunker.chunk(text)

        assert len(result.chunks) > 2
        for chunk in result.chunks:
            assert 0 < len(chunk.content) <= self.chunker.max_chunk_size

    def test_no_words_lost(self):
        """Concatenated chunks contain every word of the input, in order."""
        text = (
            "Photosynthesis converts light into chemical energy. " * 4
            + "\n\n"
            + "Mitochondria produce most of the cell's supply of ATP. " * 5
            + "\n\nShort closing note."
        )
        result = self.chunker.chunk(text)
        rebuilt = " ".join(c.content for c in result.chunks).split()

        assert rebuilt == text.split()

    def test_long_sentence_without_spaces_is_hard_split(self):
        """A sentence with no word boundary is cut at the size limit."""
        result = self.chunker.chunk("x" * 250)

        assert [len(c.content) for c in result.chunks] == [100, 100, 50]

    def test_no_empty_chunks(self):
        """Blank paragraphs never produce chunks."""
        result = self.chunker.chunk("One.\n\n   \n\n\n\nTwo.")
        assert all(c.content.strip() for c in result.chunks)

    def test_windows_line_endings(self):
        """CRLF paragraph breaks are treated like LF."""
        result = Chunker(max_chunk_size=10).chunk("Para one.\r\n\r\nPara two.")
        assert [c.content for c in result.chunks] == ["Para one.", "Para two."]


class TestSentenceSplitting:
    """Tests for the sentence splitter."""

    def test_split_on_terminators(self):
        assert split_sentences("Hi! How are you? Fine.") == ["Hi!", "How are you?", "Fine."]

    def test_terminator_without_whitespace_does_not_split(self):
        assert split_sentences("Version 1.2 shipped. Done") == ["Version 1.2 shipped.", "Done"]

    def test_blank_text(self):
        assert split_sentences("   ") == []


class TestIntensity:
    """Tests for intensity clamping and effort mapping."""

    @pytest.mark.parametrize(
        "intensity,effort",
        [
            (0.0, "minimal"),
            (0.29, "minimal"),
            (0.3, "low"),
            (0.6, "medium"),
            (0.9, "high"),
            (1.0, "high"),
        ],
    )
    def test_effort_levels(self, intensity, effort):
        assert effort_for_intensity(intensity) == effort

    def test_out_of_range_values_are_clamped(self):
        assert clamp_intensity(-3) == 0.0
        assert clamp_intensity(7) == 1.0
        assert effort_for_intensity(-1) == "minimal"
        assert effort_for_intensity(5) == "high"
