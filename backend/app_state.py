"""Backend application state: library layout and the wired pipeline."""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from chunker import Chunker
from clustering import KMeansClusterer
from models import ProcessingStatus
from pipeline import BookPipeline
from storage import BookStorage
from structurer import StructuringChunker
from vector_store import VectorStore


@dataclass(frozen=True)
class LibraryPaths:
    root: Path

    @property
    def books_dir(self) -> Path:
        return self.root / "books"

    @property
    def vectors_dir(self) -> Path:
        return self.root / "vectors"

    def ensure_layout(self) -> "LibraryPaths":
        self.books_dir.mkdir(parents=True, exist_ok=True)
        self.vectors_dir.mkdir(parents=True, exist_ok=True)
        return self


def default_library_root() -> Path:
    configured = os.environ.get("FOLIO_DATA_DIR")
    if configured:
        return Path(configured).expanduser().resolve()
    return (Path(__file__).resolve().parent / "storage" / "library").resolve()


@dataclass
class FolioServices:
    paths: LibraryPaths
    storage: BookStorage
    vectors: VectorStore
    pipeline: BookPipeline

    def close(self) -> None:
        self.vectors.close()


def build_services(
    root: Optional[Path] = None,
    on_progress: Optional[Callable[[ProcessingStatus], None]] = None,
) -> FolioServices:
    """Wire storage, vector store and providers for one library directory.

    Embedders are created on first use per embedding type, so a library
    holding only local books never needs an OpenAI key.
    """
    paths = LibraryPaths(root=Path(root) if root else default_library_root()).ensure_layout()

    storage = BookStorage(root=paths.books_dir)
    vectors = VectorStore(root=str(paths.vectors_dir))
    pipeline = BookPipeline(
        storage=storage,
        vector_store=vectors,
        chunker=Chunker(),
        structurer=StructuringChunker(),
        clusterer=KMeansClusterer(),
        on_progress=on_progress,
    )
    print(f"✓ Library ready at {paths.root}")
    return FolioServices(paths=paths, storage=storage, vectors=vectors, pipeline=pipeline)


class FolioAppState:
    """Holds the currently-open library and its services."""

    def __init__(self, root: Optional[Path] = None):
        self._lock = threading.RLock()
        self._services = build_services(root)

    def current(self) -> FolioServices:
        with self._lock:
            return self._services

    def open_library(self, root: Path) -> FolioServices:
        with self._lock:
            self._services.close()
            self._services = build_services(root)
            return self._services
