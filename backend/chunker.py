"""
Text chunking module for Folio.

Splits uploaded notes into titled chunks of at most ~1000 characters.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional

SENTENCE_TERMINATORS = (".", "!", "?")


@dataclass
class TextChunk:
    content: str
    title: Optional[str] = None


@dataclass
class ChunkingResult:
    chunks: List[TextChunk] = field(default_factory=list)
    suggested_title: str = "Untitled Document"


def effort_for_intensity(intensity: float) -> str:
    """Map a 0..1 rewrite intensity onto the provider effort scale."""
    level = clamp_intensity(intensity)
    if level < 0.3:
        return "minimal"
    if level < 0.6:
        return "low"
    if level < 0.9:
        return "medium"
    return "high"


def clamp_intensity(intensity: float) -> float:
    return min(1.0, max(0.0, float(intensity)))


def split_sentences(text: str) -> List[str]:
    """Split on '.', '!' or '?' followed by whitespace."""
    sentences = []
    start = 0
    for pos, char in enumerate(text):
        if char not in SENTENCE_TERMINATORS:
            continue
        at_end = pos + 1 >= len(text)
        if at_end or text[pos + 1].isspace():
            sentence = text[start : pos + 1].strip()
            if sentence:
                sentences.append(sentence)
            start = pos + 1

    tail = text[start:].strip()
    if tail:
        sentences.append(tail)
    return sentences


class Chunker:
    """Rule-based splitter used when no structuring provider is involved."""

    def __init__(self, max_chunk_size: int = 1000):
        """
        Initialize the chunker.

        Args:
            max_chunk_size: Maximum chunk size in characters
        """
        self.max_chunk_size = max_chunk_size

    def chunk(self, text: str, intensity: float = 0.5) -> ChunkingResult:
        """
        Split text into titled chunks.

        Args:
            text: The text to chunk
            intensity: Accepted for contract parity with the delegated
                chunker; rule-based splitting never rewrites.

        Returns:
            ChunkingResult with chunks titled ``Chunk 1``, ``Chunk 2``...
        """
        if not text or not text.strip():
            return ChunkingResult()

        text = self._clean_text(text)
        paragraphs = self._split_into_paragraphs(text)

        if len(paragraphs) == 1:
            # No paragraph breaks: every sentence stands on its own
            pieces = []
            for sentence in split_sentences(paragraphs[0]):
                pieces.extend(self._cap_length(sentence))
        else:
            pieces = self._accumulate(paragraphs)

        chunks = [
            TextChunk(content=piece, title=f"Chunk {i + 1}")
            for i, piece in enumerate(pieces)
            if piece.strip()
        ]
        return ChunkingResult(chunks=chunks)

    def _clean_text(self, text: str) -> str:
        """Normalize line endings and trim the text."""
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        return text.strip()

    def _split_into_paragraphs(self, text: str) -> List[str]:
        """Split text into blank-line delimited paragraphs."""
        paragraphs = re.split(r"\n\s*\n", text)
        return [p.strip() for p in paragraphs if p.strip()]

    def _accumulate(self, paragraphs: List[str]) -> List[str]:
        """Group paragraphs until the next one would exceed the threshold."""
        chunks: List[str] = []
        current = ""

        for paragraph in paragraphs:
            if len(paragraph) > self.max_chunk_size:
                if current:
                    chunks.append(current)
                    current = ""
                chunks.extend(self._split_paragraph(paragraph))
                continue

            candidate = f"{current}\n\n{paragraph}" if current else paragraph
            if current and len(candidate) > self.max_chunk_size:
                chunks.append(current)
                current = paragraph
            else:
                current = candidate

        if current:
            chunks.append(current)
        return chunks

    def _split_paragraph(self, paragraph: str) -> List[str]:
        """Split an oversized paragraph along sentence boundaries."""
        chunks: List[str] = []
        current = ""

        for sentence in split_sentences(paragraph):
            for piece in self._cap_length(sentence):
                candidate = f"{current} {piece}" if current else piece
                if current and len(candidate) > self.max_chunk_size:
                    chunks.append(current)
                    current = piece
                else:
                    current = candidate

        if current:
            chunks.append(current)
        return chunks

    def _cap_length(self, text: str) -> List[str]:
        """Hard-split a single sentence longer than the threshold."""
        pieces: List[str] = []
        remaining = text.strip()

        while len(remaining) > self.max_chunk_size:
            window = remaining[: self.max_chunk_size]
            # Break at a word boundary when there is one
            cut = window.rfind(" ")
            if cut <= 0:
                cut = self.max_chunk_size
            pieces.append(remaining[:cut].strip())
            remaining = remaining[cut:].strip()

        if remaining:
            pieces.append(remaining)
        return pieces
