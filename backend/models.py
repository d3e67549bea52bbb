"""Shared backend models for Folio."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class EmbeddingType(str, Enum):
    """Embedding provider of a book. Fixed at book creation."""

    OPENAI = "openai"
    LOCAL = "local"

    @property
    def collection_name(self) -> str:
        return f"collection_{self.value}"


class OrganizationMode(str, Enum):
    FILES = "files"
    CLUSTERS = "clusters"


class ChunkingMode(str, Enum):
    LOCAL = "local"
    DELEGATED = "delegated"


class PipelineStage(str, Enum):
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    CLUSTERING = "clustering"
    ASSEMBLING = "assembling"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


class ReorderDirection(str, Enum):
    UP = "up"
    DOWN = "down"


def _timestamp() -> float:
    return time.time()


def new_id() -> str:
    return str(uuid.uuid4())


def count_words(content: str) -> int:
    return len(content.split())


@dataclass
class Book:
    """A book owns its chapter tree and pins one embedding space."""

    id: str
    title: str
    embedding_type: EmbeddingType
    original_files: List[Dict[str, str]] = field(default_factory=list)
    created_at: float = field(default_factory=_timestamp)
    updated_at: float = field(default_factory=_timestamp)


@dataclass
class Chapter:
    id: str
    book_id: str
    title: str
    order: int
    created_at: float = field(default_factory=_timestamp)


@dataclass
class Section:
    id: str
    chapter_id: str
    title: str
    order: int
    created_at: float = field(default_factory=_timestamp)


@dataclass
class Chunk:
    """Smallest addressable unit of organized text.

    ``embedding`` is set and ``is_embedded`` is true only when the vector was
    computed from the current ``content``.
    """

    id: str
    section_id: str
    order: int
    content: str
    title: Optional[str] = None
    embedding: Optional[List[float]] = None
    is_embedded: bool = False
    word_count: int = 0
    filename: Optional[str] = None
    next_chunk_id: Optional[str] = None
    created_at: float = field(default_factory=_timestamp)
    updated_at: float = field(default_factory=_timestamp)

    def __post_init__(self):
        if not self.word_count:
            self.word_count = count_words(self.content)


@dataclass(frozen=True)
class VectorMetadata:
    """Closed metadata structure stored next to every vector record."""

    chunk_id: str
    book_id: str
    content: str = ""
    title: Optional[str] = None
    filename: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "chunk_id": self.chunk_id,
            "book_id": self.book_id,
            "content": self.content,
            "title": self.title,
            "filename": self.filename,
        }

    @classmethod
    def from_dict(cls, raw: Dict) -> "VectorMetadata":
        return cls(
            chunk_id=raw["chunk_id"],
            book_id=raw["book_id"],
            content=raw.get("content") or "",
            title=raw.get("title"),
            filename=raw.get("filename"),
        )


# API payloads

class ChunkPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    section_id: str = Field(alias="sectionId")
    title: Optional[str] = None
    content: str
    order: int
    word_count: int = Field(default=0, alias="wordCount")
    is_embedded: bool = Field(default=False, alias="isEmbedded")
    next_chunk_id: Optional[str] = Field(default=None, alias="nextChunkId")
    filename: Optional[str] = None

    @classmethod
    def from_record(cls, chunk: Chunk) -> "ChunkPayload":
        return cls(
            id=chunk.id,
            section_id=chunk.section_id,
            title=chunk.title,
            content=chunk.content,
            order=chunk.order,
            word_count=chunk.word_count,
            is_embedded=chunk.is_embedded,
            next_chunk_id=chunk.next_chunk_id,
            filename=chunk.filename,
        )


class SectionPayload(BaseModel):
    id: str
    title: str
    order: int
    chunks: List[ChunkPayload] = Field(default_factory=list)


class ChapterPayload(BaseModel):
    id: str
    title: str
    order: int
    sections: List[SectionPayload] = Field(default_factory=list)


class BookStructurePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    embedding_type: EmbeddingType = Field(alias="embeddingType")
    chapters: List[ChapterPayload] = Field(default_factory=list)

    def chunk_ids(self) -> List[str]:
        return [
            chunk.id
            for chapter in self.chapters
            for section in chapter.sections
            for chunk in section.chunks
        ]


class BookSummaryPayload(BaseModel):
    id: str
    title: str
    embedding_type: EmbeddingType
    created_at: float = 0.0


class SearchHitPayload(BaseModel):
    chunk_id: str
    book_id: str
    score: float
    title: Optional[str] = None
    text: str = ""


class ProcessingStatus(BaseModel):
    stage: PipelineStage
    progress: float = 0.0
    message: str = ""
