"""Maps clusters or source files onto the chapter/section hierarchy."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

from clustering import Cluster

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "is", "are", "was", "were", "be", "been", "have",
        "has", "had", "do", "does", "did", "will", "would", "could", "should",
        "this", "that", "these", "those", "from", "about", "into", "than",
        "then", "there", "their", "they", "them", "what", "when", "which",
        "while", "also", "just", "some", "very", "more", "most", "such",
    }
)

OVERVIEW_SECTION = "Overview"
FILE_SECTION = "Content"


@dataclass
class SectionPlan:
    title: str
    chunk_ids: List[str] = field(default_factory=list)


@dataclass
class ChapterPlan:
    title: str
    sections: List[SectionPlan] = field(default_factory=list)


def _tokenize(content: str) -> List[str]:
    words = []
    for raw in content.lower().split():
        word = raw.strip(".,;:!?\"'()[]{}<>-_*#`")
        if word:
            words.append(word)
    return words


def generate_chapter_title(content: str, chapter_number: int) -> str:
    """``Chapter <n>: <Word1> & <Word2>`` from the two most frequent keywords."""
    freq = Counter(
        word
        for word in _tokenize(content)
        if len(word) > 3 and word not in STOP_WORDS
    )
    top_words = [word[:1].upper() + word[1:] for word, _ in freq.most_common(2)]
    if top_words:
        return f"Chapter {chapter_number}: {' & '.join(top_words)}"
    return f"Chapter {chapter_number}"


def assemble(clusters: Sequence[Cluster], chunk_lookup: Dict[str, str]) -> List[ChapterPlan]:
    """One chapter per cluster, each with a single Overview section.

    ``chunk_lookup`` maps chunk id to chunk content.
    """
    chapters: List[ChapterPlan] = []
    for index, cluster in enumerate(clusters):
        cluster_content = " ".join(chunk_lookup.get(cid, "") for cid in cluster.items)
        chapters.append(
            ChapterPlan(
                title=generate_chapter_title(cluster_content, index + 1),
                sections=[SectionPlan(title=OVERVIEW_SECTION, chunk_ids=list(cluster.items))],
            )
        )
    return chapters


def assemble_by_file(files: Sequence[Tuple[str, List[str]]]) -> List[ChapterPlan]:
    """One chapter per ``(filename, chunk_ids)`` pair with a single Content section."""
    return [
        ChapterPlan(
            title=filename,
            sections=[SectionPlan(title=FILE_SECTION, chunk_ids=list(chunk_ids))],
        )
        for filename, chunk_ids in files
    ]
