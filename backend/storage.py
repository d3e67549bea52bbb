"""Book storage: books, chapters, sections and chunks with optional JSON files."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import asdict, replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from errors import NotFound
from models import (
    Book,
    BookStructurePayload,
    Chapter,
    ChapterPayload,
    Chunk,
    ChunkPayload,
    EmbeddingType,
    ReorderDirection,
    Section,
    SectionPayload,
    count_words,
    new_id,
)


class BookStorage:
    """In-memory book tree; with ``root`` set, one JSON file per book."""

    def __init__(self, root: Optional[Path] = None):
        self._lock = threading.RLock()
        self.books: Dict[str, Book] = {}
        self.chapters: Dict[str, Chapter] = {}
        self.sections: Dict[str, Section] = {}
        self.chunks: Dict[str, Chunk] = {}

        self.books_dir = Path(root) if root else None
        if self.books_dir:
            self.books_dir.mkdir(parents=True, exist_ok=True)
            self._load_all()

    # ------------------------------------------------------------------
    # Books
    # ------------------------------------------------------------------
    def create_book(
        self,
        title: str,
        embedding_type: EmbeddingType,
        original_files: Optional[List[Dict[str, str]]] = None,
        book_id: Optional[str] = None,
    ) -> Book:
        book = Book(
            id=book_id or new_id(),
            title=title,
            embedding_type=EmbeddingType(embedding_type),
            original_files=list(original_files or []),
        )
        with self._lock:
            self.books[book.id] = book
            self._persist_book(book.id)
        return book

    def get_book(self, book_id: str) -> Book:
        book = self.books.get(book_id)
        if book is None:
            raise NotFound("book", book_id)
        return book

    def list_books(self) -> List[Book]:
        return sorted(self.books.values(), key=lambda b: b.created_at)

    def delete_book(self, book_id: str) -> List[Chunk]:
        """Cascade delete; returns the chunks that were removed."""
        with self._lock:
            self.get_book(book_id)
            removed = self._drop_tree(book_id)
            del self.books[book_id]
            self._remove_book_file(book_id)
        return removed

    def find_book_for_chunk(self, chunk_id: str) -> Book:
        chunk = self.get_chunk(chunk_id)
        section = self.get_section(chunk.section_id)
        chapter = self.chapters.get(section.chapter_id)
        if chapter is None:
            raise NotFound("chapter", section.chapter_id)
        return self.get_book(chapter.book_id)

    # ------------------------------------------------------------------
    # Tree listing
    # ------------------------------------------------------------------
    def list_chapters(self, book_id: str) -> List[Chapter]:
        return sorted(
            (c for c in self.chapters.values() if c.book_id == book_id),
            key=lambda c: c.order,
        )

    def list_sections(self, chapter_id: str) -> List[Section]:
        return sorted(
            (s for s in self.sections.values() if s.chapter_id == chapter_id),
            key=lambda s: s.order,
        )

    def list_chunks(self, section_id: str) -> List[Chunk]:
        return sorted(
            (c for c in self.chunks.values() if c.section_id == section_id),
            key=lambda c: c.order,
        )

    def list_book_chunks(self, book_id: str) -> List[Chunk]:
        return [
            chunk
            for chapter in self.list_chapters(book_id)
            for section in self.list_sections(chapter.id)
            for chunk in self.list_chunks(section.id)
        ]

    def get_section(self, section_id: str) -> Section:
        section = self.sections.get(section_id)
        if section is None:
            raise NotFound("section", section_id)
        return section

    def get_chunk(self, chunk_id: str) -> Chunk:
        chunk = self.chunks.get(chunk_id)
        if chunk is None:
            raise NotFound("chunk", chunk_id)
        return chunk

    def book_id_for_section(self, section_id: str) -> str:
        section = self.get_section(section_id)
        return self.chapters[section.chapter_id].book_id

    def replace_tree(
        self,
        book_id: str,
        chapters: Sequence[Chapter],
        sections: Sequence[Section],
        chunks: Sequence[Chunk],
        **book_changes,
    ) -> List[Chunk]:
        """Swap a book's whole tree in one step; returns the old chunks.

        ``book_changes`` (title, original_files) are applied to the book in the
        same step and rolled back with the tree when saving fails.
        """
        with self._lock:
            self.get_book(book_id)
            snapshot = self._snapshot()
            old_chunks = self._drop_tree(book_id)
            for chapter in chapters:
                self.chapters[chapter.id] = chapter
            for section in sections:
                self.sections[section.id] = section
            for chunk in chunks:
                self.chunks[chunk.id] = chunk
            self.books[book_id] = replace(
                self.books[book_id], updated_at=time.time(), **book_changes
            )
            try:
                self._persist_book(book_id)
            except OSError:
                self._restore(snapshot)
                raise
        return old_chunks

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------
    def create_chunk(
        self,
        section_id: str,
        content: str,
        order: Optional[int] = None,
        title: Optional[str] = None,
    ) -> Chunk:
        """Insert a not-yet-embedded chunk; later siblings shift down."""
        with self._lock:
            siblings = self.list_chunks(section_id) if section_id in self.sections else None
            if siblings is None:
                raise NotFound("section", section_id)
            saved = self._save_links()
            position = len(siblings) if order is None else max(0, min(order, len(siblings)))
            for sibling in siblings[position:]:
                sibling.order += 1

            chunk = Chunk(
                id=new_id(),
                section_id=section_id,
                order=position,
                title=title,
                content=content,
                word_count=count_words(content),
            )
            if position > 0:
                previous = siblings[position - 1]
                chunk.next_chunk_id = previous.next_chunk_id
                previous.next_chunk_id = chunk.id
            elif siblings:
                first = siblings[0].id
                # the old head may be reached from another section
                for other in self.chunks.values():
                    if other.next_chunk_id == first:
                        other.next_chunk_id = chunk.id
                chunk.next_chunk_id = first
            self.chunks[chunk.id] = chunk
            try:
                self._persist_book(self.book_id_for_section(section_id))
            except OSError:
                self._restore_links(saved)
                raise
        return chunk

    def update_chunk(self, chunk_id: str, **changes) -> Chunk:
        with self._lock:
            current = self.get_chunk(chunk_id)
            updated = replace(current, **changes)
            if "content" in changes:
                updated.word_count = count_words(updated.content)
            updated.updated_at = time.time()
            self.chunks[chunk_id] = updated
            try:
                self._persist_book(self.book_id_for_section(updated.section_id))
            except OSError:
                self.chunks[chunk_id] = current
                raise
        return updated

    def delete_chunk(self, chunk_id: str) -> Chunk:
        """Remove a chunk, keep sibling order dense and the next-chain intact."""
        with self._lock:
            chunk = self.get_chunk(chunk_id)
            book_id = self.book_id_for_section(chunk.section_id)
            saved = self._save_links()
            del self.chunks[chunk_id]

            for other in self.chunks.values():
                if other.next_chunk_id == chunk_id:
                    other.next_chunk_id = chunk.next_chunk_id
            for sibling in self.list_chunks(chunk.section_id):
                if sibling.order > chunk.order:
                    sibling.order -= 1
            try:
                self._persist_book(book_id)
            except OSError:
                self._restore_links(saved)
                raise
        return chunk

    def swap_chunk_order(self, chunk_id: str, direction: ReorderDirection) -> bool:
        """Swap order with the adjacent sibling. False when already at the edge."""
        with self._lock:
            chunk = self.get_chunk(chunk_id)
            siblings = self.list_chunks(chunk.section_id)
            position = next(i for i, c in enumerate(siblings) if c.id == chunk_id)
            target = position - 1 if ReorderDirection(direction) == ReorderDirection.UP else position + 1
            if target < 0 or target >= len(siblings):
                return False

            other = siblings[target]
            saved = self._save_links()
            chunk.order, other.order = other.order, chunk.order
            chunk.updated_at = other.updated_at = time.time()
            try:
                self._persist_book(self.book_id_for_section(chunk.section_id))
            except OSError:
                self._restore_links(saved)
                raise
        return True

    def has_chunk(self, chunk_id: str) -> bool:
        return chunk_id in self.chunks

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------
    def get_structure(self, book_id: str) -> BookStructurePayload:
        book = self.get_book(book_id)
        return BookStructurePayload(
            id=book.id,
            title=book.title,
            embedding_type=book.embedding_type,
            chapters=[
                ChapterPayload(
                    id=chapter.id,
                    title=chapter.title,
                    order=chapter.order,
                    sections=[
                        SectionPayload(
                            id=section.id,
                            title=section.title,
                            order=section.order,
                            chunks=[
                                ChunkPayload.from_record(chunk)
                                for chunk in self.list_chunks(section.id)
                            ],
                        )
                        for section in self.list_sections(chapter.id)
                    ],
                )
                for chapter in self.list_chapters(book_id)
            ],
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _drop_tree(self, book_id: str) -> List[Chunk]:
        removed: List[Chunk] = []
        for chapter in self.list_chapters(book_id):
            for section in self.list_sections(chapter.id):
                for chunk in self.list_chunks(section.id):
                    removed.append(self.chunks.pop(chunk.id))
                del self.sections[section.id]
            del self.chapters[chapter.id]
        return removed

    def _snapshot(self):
        return (
            dict(self.books),
            dict(self.chapters),
            dict(self.sections),
            dict(self.chunks),
        )

    def _restore(self, snapshot):
        self.books, self.chapters, self.sections, self.chunks = snapshot

    def _save_links(self):
        """Chunk dict plus each chunk's order, next link and timestamp.

        Chunk edits mutate records in place, so a plain dict copy is not
        enough to undo them.
        """
        positions = {
            chunk_id: (chunk.order, chunk.next_chunk_id, chunk.updated_at)
            for chunk_id, chunk in self.chunks.items()
        }
        return dict(self.chunks), positions

    def _restore_links(self, saved):
        chunks, positions = saved
        self.chunks = chunks
        for chunk_id, (order, next_chunk_id, updated_at) in positions.items():
            chunk = self.chunks[chunk_id]
            chunk.order = order
            chunk.next_chunk_id = next_chunk_id
            chunk.updated_at = updated_at

    def _book_path(self, book_id: str) -> Path:
        return self.books_dir / f"{book_id}.json"

    def _persist_book(self, book_id: str):
        if not self.books_dir:
            return
        book = self.books[book_id]
        chapters = self.list_chapters(book_id)
        sections = [s for c in chapters for s in self.list_sections(c.id)]
        chunks = [ch for s in sections for ch in self.list_chunks(s.id)]

        payload = {
            "book": {**asdict(book), "embedding_type": book.embedding_type.value},
            "chapters": [asdict(c) for c in chapters],
            "sections": [asdict(s) for s in sections],
            "chunks": [asdict(c) for c in chunks],
        }
        path = self._book_path(book_id)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        tmp_path.replace(path)

    def _remove_book_file(self, book_id: str):
        if not self.books_dir:
            return
        path = self._book_path(book_id)
        if path.exists():
            path.unlink()

    def _load_all(self):
        for path in sorted(self.books_dir.glob("*.json")):
            with open(path, "r", encoding="utf-8") as handle:
                raw = json.load(handle)

            book_raw = dict(raw["book"])
            book_raw["embedding_type"] = EmbeddingType(book_raw["embedding_type"])
            book = Book(**book_raw)
            self.books[book.id] = book
            for item in raw.get("chapters", []):
                chapter = Chapter(**item)
                self.chapters[chapter.id] = chapter
            for item in raw.get("sections", []):
                section = Section(**item)
                self.sections[section.id] = section
            for item in raw.get("chunks", []):
                chunk = Chunk(**item)
                self.chunks[chunk.id] = chunk
        if self.books:
            print(f"Loaded {len(self.books)} books from {self.books_dir}")
