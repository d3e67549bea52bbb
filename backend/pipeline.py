"""Pipeline orchestration: chunk, embed, cluster, assemble and persist books."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from assembler import ChapterPlan, assemble, assemble_by_file
from chunker import Chunker, TextChunk
from clustering import KMeansClusterer, VectorItem, suggest_cluster_count
from embedder import Embedder, create_embedder
from errors import EmptyInput, MalformedProviderResponse, PipelineError, ProviderUnavailable
from models import (
    Book,
    BookSummaryPayload,
    Chapter,
    Chunk,
    ChunkingMode,
    EmbeddingType,
    OrganizationMode,
    PipelineStage,
    ProcessingStatus,
    ReorderDirection,
    SearchHitPayload,
    Section,
    VectorMetadata,
    new_id,
)
from storage import BookStorage
from structurer import StructuringChunker
from vector_store import VectorStore


@dataclass
class UploadedFile:
    filename: str
    content: str


@dataclass
class UploadOptions:
    embedding_type: EmbeddingType = EmbeddingType.OPENAI
    intensity: float = 0.5
    target_book_id: Optional[str] = None
    organization: OrganizationMode = OrganizationMode.FILES
    # None picks local chunking for local books and delegated for openai books
    chunking: Optional[ChunkingMode] = None
    cluster_count: Optional[int] = None
    title: Optional[str] = None


@dataclass
class PipelineOutcome:
    """Result of a pipeline operation: a value, or the error and failing stage."""

    value: Any = None
    error: Optional[PipelineError] = None
    stage: PipelineStage = PipelineStage.DONE

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value


@dataclass
class _FileChunks:
    file: UploadedFile
    chunks: List[Chunk]


class BookPipeline:
    """Sequences chunking, embedding, clustering, assembly and persistence.

    The only component that talks to the book store, the vector store and the
    providers. Writes to one book are serialized through a per-book lock.
    """

    def __init__(
        self,
        storage: BookStorage,
        vector_store: VectorStore,
        embedders: Optional[Dict[EmbeddingType, Embedder]] = None,
        chunker: Optional[Chunker] = None,
        structurer: Optional[StructuringChunker] = None,
        clusterer: Optional[KMeansClusterer] = None,
        on_progress: Optional[Callable[[ProcessingStatus], None]] = None,
    ):
        self.storage = storage
        self.vector_store = vector_store
        self.embedders: Dict[EmbeddingType, Embedder] = dict(embedders or {})
        self.chunker = chunker or Chunker()
        self.structurer = structurer
        self.clusterer = clusterer or KMeansClusterer()
        self.on_progress = on_progress
        self._book_locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------
    async def process_upload(
        self, files: Sequence[UploadedFile], options: Optional[UploadOptions] = None
    ) -> PipelineOutcome:
        """Build (or rebuild) a book from uploaded files.

        Returns an outcome holding the BookStructurePayload. On failure
        nothing is left behind: a new book is not created and an existing
        book keeps its previous tree and vectors.
        """
        options = options or UploadOptions()
        progress = _StageTracker(self._report)
        try:
            usable = [f for f in files if f.content and f.content.strip()]
            if not usable:
                raise EmptyInput("Files are empty or contain no usable text")

            existing: Optional[Book] = None
            if options.target_book_id:
                existing = self.storage.get_book(options.target_book_id)
                embedding_type = existing.embedding_type
            else:
                embedding_type = EmbeddingType(options.embedding_type)
            book_id = existing.id if existing else new_id()

            async with self._lock_for(book_id):
                progress.enter(PipelineStage.CHUNKING, 0.1, f"Chunking {len(usable)} file(s)")
                per_file, suggested_title = await self._chunk_files(usable, options, embedding_type)

                progress.enter(PipelineStage.EMBEDDING, 0.35, "Generating embeddings")
                embedder = self._embedder(embedding_type)
                await self._embed_chunks(embedder, per_file)

                if options.organization == OrganizationMode.CLUSTERS:
                    progress.enter(PipelineStage.CLUSTERING, 0.6, "Clustering chunks")
                    plans = self._cluster(per_file, options.cluster_count)
                else:
                    plans = assemble_by_file(
                        [(item.file.filename, [c.id for c in item.chunks]) for item in per_file]
                    )

                progress.enter(PipelineStage.ASSEMBLING, 0.75, "Assembling chapters")
                all_chunks = [chunk for item in per_file for chunk in item.chunks]
                chapters, sections = self._materialize(book_id, plans, all_chunks)
                self._link_chunks(per_file)

                progress.enter(PipelineStage.PERSISTING, 0.9, "Saving book")
                title = (
                    options.title
                    or (existing.title if existing else None)
                    or suggested_title
                    or usable[0].filename
                )
                await asyncio.to_thread(
                    self._persist_upload,
                    book_id,
                    existing,
                    title,
                    embedding_type,
                    usable,
                    chapters,
                    sections,
                    all_chunks,
                )

            progress.enter(PipelineStage.DONE, 1.0, f"Book ready with {len(all_chunks)} chunks")
            return PipelineOutcome(value=self.storage.get_structure(book_id))
        except PipelineError as exc:
            return progress.fail(exc)

    async def _chunk_files(
        self,
        files: Sequence[UploadedFile],
        options: UploadOptions,
        embedding_type: EmbeddingType,
    ) -> Tuple[List[_FileChunks], Optional[str]]:
        mode = options.chunking or (
            ChunkingMode.LOCAL if embedding_type == EmbeddingType.LOCAL else ChunkingMode.DELEGATED
        )
        chunker = self.chunker if mode == ChunkingMode.LOCAL else self._require_structurer()

        per_file: List[_FileChunks] = []
        suggested_title: Optional[str] = None
        for file in files:
            result = await asyncio.to_thread(chunker.chunk, file.content, options.intensity)
            if mode == ChunkingMode.DELEGATED and suggested_title is None:
                suggested_title = result.suggested_title
            if not result.chunks:
                continue
            per_file.append(_FileChunks(file=file, chunks=self._new_chunks(file, result.chunks)))

        if not per_file:
            raise EmptyInput("No usable text after chunking")
        return per_file, suggested_title

    def _new_chunks(self, file: UploadedFile, pieces: List[TextChunk]) -> List[Chunk]:
        return [
            Chunk(
                id=new_id(),
                section_id="",
                order=i,
                title=piece.title,
                content=piece.content,
                filename=file.filename,
            )
            for i, piece in enumerate(pieces)
        ]

    async def _embed_chunks(self, embedder: Embedder, per_file: List[_FileChunks]):
        chunks = [chunk for item in per_file for chunk in item.chunks]
        vectors = await asyncio.to_thread(embedder.embed_batch, [c.content for c in chunks])
        if len(vectors) != len(chunks):
            raise MalformedProviderResponse(
                f"Expected {len(chunks)} embeddings, provider returned {len(vectors)}"
            )
        for chunk, vector in zip(chunks, vectors):
            chunk.embedding = vector
            chunk.is_embedded = True

    def _cluster(self, per_file: List[_FileChunks], cluster_count: Optional[int]) -> List[ChapterPlan]:
        chunks = [chunk for item in per_file for chunk in item.chunks]
        k = cluster_count or suggest_cluster_count(len(chunks))
        clusters = self.clusterer.cluster(
            [VectorItem(id=c.id, vector=c.embedding) for c in chunks], k
        )
        return assemble(clusters, {c.id: c.content for c in chunks})

    def _materialize(
        self, book_id: str, plans: List[ChapterPlan], chunks: List[Chunk]
    ) -> Tuple[List[Chapter], List[Section]]:
        by_id = {chunk.id: chunk for chunk in chunks}
        chapters: List[Chapter] = []
        sections: List[Section] = []
        for chapter_order, plan in enumerate(plans):
            chapter = Chapter(id=new_id(), book_id=book_id, title=plan.title, order=chapter_order)
            chapters.append(chapter)
            for section_order, section_plan in enumerate(plan.sections):
                section = Section(
                    id=new_id(),
                    chapter_id=chapter.id,
                    title=section_plan.title,
                    order=section_order,
                )
                sections.append(section)
                for chunk_order, chunk_id in enumerate(section_plan.chunk_ids):
                    by_id[chunk_id].section_id = section.id
                    by_id[chunk_id].order = chunk_order
        return chapters, sections

    @staticmethod
    def _link_chunks(per_file: List[_FileChunks]):
        for item in per_file:
            for current, following in zip(item.chunks, item.chunks[1:]):
                current.next_chunk_id = following.id

    def _persist_upload(
        self,
        book_id: str,
        existing: Optional[Book],
        title: str,
        embedding_type: EmbeddingType,
        files: Sequence[UploadedFile],
        chapters: List[Chapter],
        sections: List[Section],
        chunks: List[Chunk],
    ):
        """Write vectors and the book tree; runs in a worker thread."""
        collection = embedding_type.collection_name
        added: List[str] = []
        created_book = False
        try:
            self.vector_store.add_many(
                collection,
                [(chunk.id, chunk.embedding, self._metadata(book_id, chunk)) for chunk in chunks],
            )
            added = [chunk.id for chunk in chunks]

            original_files = [{"filename": f.filename, "content": f.content} for f in files]
            if existing is None:
                self.storage.create_book(title, embedding_type, book_id=book_id)
                created_book = True
            old_chunks = self.storage.replace_tree(
                book_id,
                chapters,
                sections,
                chunks,
                title=title,
                original_files=original_files,
            )
        except Exception as exc:
            self.vector_store.remove_many(collection, added)
            if created_book:
                self.storage.delete_book(book_id)
            if isinstance(exc, PipelineError):
                raise
            raise PipelineError(f"Persisting book failed: {exc}") from exc

        self.vector_store.remove_many(collection, [old.id for old in old_chunks])

    # ------------------------------------------------------------------
    # Chunk operations
    # ------------------------------------------------------------------
    async def edit_chunk(
        self, chunk_id: str, new_content: str, title: Optional[str] = None
    ) -> PipelineOutcome:
        """Replace a chunk's content and re-embed it before acknowledging.

        If embedding fails the chunk keeps its previous content and vector.
        """
        try:
            book = self.storage.find_book_for_chunk(chunk_id)
            async with self._lock_for(book.id):
                chunk = self.storage.get_chunk(chunk_id)
                if not new_content or not new_content.strip():
                    raise EmptyInput("Chunk content cannot be empty")

                changes: Dict[str, Any] = {}
                if title is not None:
                    changes["title"] = title
                if new_content == chunk.content and chunk.is_embedded:
                    if changes:
                        chunk = self.storage.update_chunk(chunk_id, **changes)
                    return PipelineOutcome(value=chunk)

                embedder = self._embedder(book.embedding_type)
                vector = await asyncio.to_thread(embedder.embed, new_content)

                collection = book.embedding_type.collection_name
                previous_vector = self.vector_store.get(collection, chunk_id)
                draft = Chunk(
                    id=chunk.id,
                    section_id=chunk.section_id,
                    order=chunk.order,
                    title=changes.get("title", chunk.title),
                    content=new_content,
                    filename=chunk.filename,
                )
                self.vector_store.add(collection, chunk_id, vector, self._metadata(book.id, draft))
                try:
                    updated = self.storage.update_chunk(
                        chunk_id,
                        content=new_content,
                        embedding=vector,
                        is_embedded=True,
                        **changes,
                    )
                except Exception as exc:
                    if previous_vector is not None:
                        self.vector_store.add(
                            collection, chunk_id, previous_vector, self._metadata(book.id, chunk)
                        )
                    else:
                        self.vector_store.remove(collection, chunk_id)
                    raise PipelineError(f"Saving chunk failed: {exc}") from exc

            print(f"Re-embedded chunk {chunk_id}")
            return PipelineOutcome(value=updated)
        except PipelineError as exc:
            return PipelineOutcome(error=exc, stage=PipelineStage.FAILED)

    async def delete_chunk(self, chunk_id: str) -> PipelineOutcome:
        """Remove the chunk's vector, then the chunk itself."""
        try:
            book = self.storage.find_book_for_chunk(chunk_id)
            async with self._lock_for(book.id):
                chunk = self.storage.get_chunk(chunk_id)
                collection = book.embedding_type.collection_name
                try:
                    removed = self.vector_store.remove(collection, chunk_id)
                except PipelineError:
                    raise
                except Exception as exc:
                    raise PipelineError(f"Removing vector failed: {exc}") from exc

                try:
                    self.storage.delete_chunk(chunk_id)
                except Exception as exc:
                    if removed and chunk.embedding:
                        self.vector_store.add(
                            collection, chunk_id, chunk.embedding, self._metadata(book.id, chunk)
                        )
                    raise PipelineError(f"Deleting chunk failed: {exc}") from exc
            return PipelineOutcome(value=True)
        except PipelineError as exc:
            return PipelineOutcome(error=exc, stage=PipelineStage.FAILED)

    async def reorder_chunk(self, chunk_id: str, direction: ReorderDirection) -> PipelineOutcome:
        """Swap with the neighbour; at the boundary this is a successful no-op."""
        direction = ReorderDirection(direction)
        try:
            book = self.storage.find_book_for_chunk(chunk_id)
            async with self._lock_for(book.id):
                try:
                    moved = self.storage.swap_chunk_order(chunk_id, direction)
                except PipelineError:
                    raise
                except Exception as exc:
                    raise PipelineError(f"Reordering chunk failed: {exc}") from exc
            return PipelineOutcome(value=moved)
        except PipelineError as exc:
            return PipelineOutcome(error=exc, stage=PipelineStage.FAILED)

    async def create_chunk(
        self, section_id: str, content: str = "", order: Optional[int] = None
    ) -> PipelineOutcome:
        """Add a not-yet-embedded chunk; it gets a vector on its first edit."""
        try:
            book_id = self.storage.book_id_for_section(section_id)
            async with self._lock_for(book_id):
                try:
                    chunk = self.storage.create_chunk(section_id, content, order=order)
                except PipelineError:
                    raise
                except Exception as exc:
                    raise PipelineError(f"Creating chunk failed: {exc}") from exc
            return PipelineOutcome(value=chunk)
        except PipelineError as exc:
            return PipelineOutcome(error=exc, stage=PipelineStage.FAILED)

    async def rewrite_chunk(self, chunk_id: str, intensity: float = 0.5) -> PipelineOutcome:
        """Suggest rewritten content for a chunk. Nothing is saved."""
        try:
            chunk = self.storage.get_chunk(chunk_id)
            structurer = self._require_structurer()
            rewritten = await asyncio.to_thread(structurer.rewrite, chunk.content, intensity)
            return PipelineOutcome(value=rewritten)
        except PipelineError as exc:
            return PipelineOutcome(error=exc, stage=PipelineStage.FAILED)

    # ------------------------------------------------------------------
    # Books
    # ------------------------------------------------------------------
    async def search_book(self, book_id: str, query: str, top_k: int = 5) -> PipelineOutcome:
        """Rank a book's chunks by cosine similarity to ``query``."""
        try:
            book = self.storage.get_book(book_id)
            if not query or not query.strip():
                return PipelineOutcome(value=[])

            embedder = self._embedder(book.embedding_type)
            vector = await asyncio.to_thread(embedder.embed, query)
            hits = self.vector_store.search(
                book.embedding_type.collection_name, vector, top_k, where={"book_id": book_id}
            )
            results = [
                SearchHitPayload(
                    chunk_id=hit.id,
                    book_id=book_id,
                    score=hit.score,
                    title=hit.metadata.title,
                    text=hit.metadata.content,
                )
                for hit in hits
                if self.storage.has_chunk(hit.id)
            ]
            return PipelineOutcome(value=results)
        except PipelineError as exc:
            return PipelineOutcome(error=exc, stage=PipelineStage.FAILED)

    async def delete_book(self, book_id: str) -> PipelineOutcome:
        """Delete a book with its whole tree and purge its vectors."""
        try:
            book = self.storage.get_book(book_id)
            async with self._lock_for(book_id):
                collection = book.embedding_type.collection_name
                chunks = self.storage.list_book_chunks(book_id)
                stale_ids = set(self.vector_store.ids(collection, where={"book_id": book_id}))
                self.vector_store.remove_many(collection, stale_ids | {c.id for c in chunks})
                try:
                    self.storage.delete_book(book_id)
                except Exception as exc:
                    for chunk in chunks:
                        if chunk.is_embedded and chunk.embedding:
                            self.vector_store.add(
                                collection, chunk.id, chunk.embedding, self._metadata(book_id, chunk)
                            )
                    raise PipelineError(f"Deleting book failed: {exc}") from exc
            self._book_locks.pop(book_id, None)
            print(f"Deleted book {book_id} ({len(chunks)} chunks)")
            return PipelineOutcome(value=True)
        except PipelineError as exc:
            return PipelineOutcome(error=exc, stage=PipelineStage.FAILED)

    def get_book_structure(self, book_id: str) -> PipelineOutcome:
        try:
            return PipelineOutcome(value=self.storage.get_structure(book_id))
        except PipelineError as exc:
            return PipelineOutcome(error=exc, stage=PipelineStage.FAILED)

    def list_books(self) -> List[BookSummaryPayload]:
        return [
            BookSummaryPayload(
                id=book.id,
                title=book.title,
                embedding_type=book.embedding_type,
                created_at=book.created_at,
            )
            for book in self.storage.list_books()
        ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _lock_for(self, book_id: str) -> asyncio.Lock:
        lock = self._book_locks.get(book_id)
        if lock is None:
            lock = self._book_locks[book_id] = asyncio.Lock()
        return lock

    def _embedder(self, embedding_type: EmbeddingType) -> Embedder:
        embedder = self.embedders.get(embedding_type)
        if embedder is None:
            embedder = self.embedders[embedding_type] = create_embedder(embedding_type)
        return embedder

    def _require_structurer(self) -> StructuringChunker:
        if self.structurer is None:
            raise ProviderUnavailable("No text-structuring provider configured")
        return self.structurer

    @staticmethod
    def _metadata(book_id: str, chunk: Chunk) -> VectorMetadata:
        return VectorMetadata(
            chunk_id=chunk.id,
            book_id=book_id,
            content=chunk.content,
            title=chunk.title,
            filename=chunk.filename,
        )

    def _report(self, status: ProcessingStatus):
        print(f"[{status.stage.value}] {status.message}")
        if self.on_progress is not None:
            self.on_progress(status)


class _StageTracker:
    """Remembers the current upload stage so a failure can name it."""

    def __init__(self, report: Callable[[ProcessingStatus], None]):
        self.stage = PipelineStage.CHUNKING
        self._report = report

    def enter(self, stage: PipelineStage, progress: float, message: str):
        self.stage = stage
        self._report(ProcessingStatus(stage=stage, progress=progress, message=message))

    def fail(self, error: PipelineError) -> PipelineOutcome:
        failed_at = self.stage
        self._report(
            ProcessingStatus(
                stage=PipelineStage.FAILED,
                progress=1.0,
                message=f"{failed_at.value} failed: {error.describe()}",
            )
        )
        return PipelineOutcome(error=error, stage=failed_at)
