"""
Vector store module for Folio.

Keeps one FAISS inner-product index per named collection. Vectors are
L2-normalized before indexing so inner product equals cosine similarity.
"""

import json
import os
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from errors import DimensionMismatch
from models import VectorMetadata


@dataclass
class SearchHit:
    id: str
    score: float
    metadata: VectorMetadata


def _normalize(vector: List[float]) -> np.ndarray:
    v = np.asarray(vector, dtype=np.float32)
    norm = np.linalg.norm(v)
    if norm == 0:
        return v
    return v / norm


class _Collection:
    """Records plus the FAISS index built from them."""

    def __init__(self, name: str):
        self.name = name
        self.dimension = 0
        # id -> {"vector": [...], "metadata": {...}}; insertion ordered
        self.records: Dict[str, Dict] = {}
        self.index = None
        self.index_ids: List[str] = []
        self.dirty = False

    def rebuild_index(self):
        """Rebuild the FAISS index from the current records."""
        if not self.records:
            self.index = None
            self.index_ids = []
            return

        try:
            import faiss
        except ImportError:
            raise ImportError("FAISS not installed. Install with: pip install faiss-cpu")

        self.index = faiss.IndexFlatIP(self.dimension)
        self.index_ids = list(self.records.keys())
        matrix = np.stack(
            [_normalize(self.records[rid]["vector"]) for rid in self.index_ids]
        ).astype(np.float32)
        self.index.add(matrix)


class VectorStore:
    """Keyed vector collections with cosine k-nearest-neighbor search.

    Collections are created lazily on first use. With ``root`` set, each
    collection is persisted as ``<name>.faiss`` plus a ``<name>.json`` sidecar
    holding vectors and metadata; ``close()`` flushes pending writes.
    """

    def __init__(self, root: Optional[str] = None):
        self._lock = threading.RLock()
        self.root = root
        self._collections: Dict[str, _Collection] = {}
        if self.root:
            os.makedirs(self.root, exist_ok=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def add(
        self,
        collection: str,
        id: str,
        vector: List[float],
        metadata: VectorMetadata,
    ):
        """Insert or replace a record. The first insert fixes the dimension."""
        self.add_many(collection, [(id, vector, metadata)])

    def add_many(
        self,
        collection: str,
        records: Sequence[Tuple[str, List[float], VectorMetadata]],
    ):
        """Insert or replace ``(id, vector, metadata)`` records in one write.

        Every vector is checked before anything changes, so a bad record
        leaves the collection as it was. The index is updated and the
        collection saved once per call.
        """
        records = list(records)
        if not records:
            return
        with self._lock:
            coll = self._get_collection(collection)
            dimension = coll.dimension or len(records[0][1])
            for _, vector, _ in records:
                if not len(vector):
                    raise DimensionMismatch(dimension, 0)
                if len(vector) != dimension:
                    raise DimensionMismatch(dimension, len(vector))

            coll.dimension = dimension
            replacing = any(rid in coll.records for rid, _, _ in records)
            for rid, vector, metadata in records:
                coll.records[rid] = {
                    "vector": [float(x) for x in vector],
                    "metadata": metadata.to_dict(),
                }

            if replacing or coll.index is None or len({rid for rid, _, _ in records}) < len(records):
                coll.rebuild_index()
            else:
                coll.index.add(np.stack([_normalize(v) for _, v, _ in records]).astype(np.float32))
                coll.index_ids.extend(rid for rid, _, _ in records)
            self._persist(coll)

    def remove(self, collection: str, id: str) -> bool:
        """Remove a record; returns whether it existed."""
        return self.remove_many(collection, [id]) == 1

    def remove_many(self, collection: str, ids: Iterable[str]) -> int:
        """Remove records in one write; returns how many existed."""
        with self._lock:
            coll = self._get_collection(collection)
            removed = 0
            for rid in set(ids):
                if coll.records.pop(rid, None) is not None:
                    removed += 1
            if removed:
                coll.rebuild_index()
                self._persist(coll)
        return removed

    def search(
        self,
        collection: str,
        query_vector: List[float],
        top_k: int = 5,
        where: Optional[Dict[str, str]] = None,
    ) -> List[SearchHit]:
        """
        Search for the records most similar to ``query_vector``.

        Args:
            collection: Collection name
            query_vector: Query embedding vector
            top_k: Maximum number of results
            where: Optional metadata equality filter, e.g. ``{"book_id": ...}``

        Returns:
            Hits ordered by descending cosine similarity
        """
        with self._lock:
            coll = self._get_collection(collection)
            if coll.index is None or coll.index.ntotal == 0 or top_k <= 0:
                return []
            if len(query_vector) != coll.dimension:
                raise DimensionMismatch(coll.dimension, len(query_vector), "query vector")

            query_np = _normalize(query_vector).reshape(1, -1)
            k = coll.index.ntotal if where else min(top_k, coll.index.ntotal)
            scores, positions = coll.index.search(query_np, k)

            results: List[SearchHit] = []
            for score, position in zip(scores[0], positions[0]):
                if position == -1:
                    continue
                record_id = coll.index_ids[position]
                metadata = coll.records[record_id]["metadata"]
                if where and any(metadata.get(key) != value for key, value in where.items()):
                    continue
                results.append(
                    SearchHit(
                        id=record_id,
                        score=float(score),
                        metadata=VectorMetadata.from_dict(metadata),
                    )
                )
                if len(results) >= top_k:
                    break

        return results

    def get(self, collection: str, id: str) -> Optional[List[float]]:
        record = self._get_collection(collection).records.get(id)
        return list(record["vector"]) if record else None

    def ids(self, collection: str, where: Optional[Dict[str, str]] = None) -> List[str]:
        coll = self._get_collection(collection)
        return [
            rid
            for rid, record in coll.records.items()
            if not where
            or all(record["metadata"].get(key) == value for key, value in where.items())
        ]

    def size(self, collection: str) -> int:
        return len(self._get_collection(collection).records)

    def dimension(self, collection: str) -> int:
        return self._get_collection(collection).dimension

    def clear(self, collection: str):
        """Drop every record of a collection and release its dimension."""
        coll = self._get_collection(collection)
        coll.records = {}
        coll.dimension = 0
        coll.index = None
        coll.index_ids = []
        if self.root:
            for path in self._paths(collection):
                if os.path.exists(path):
                    os.remove(path)
        print(f"Collection cleared: {collection}")

    def close(self):
        """Flush collections that still have unsaved changes."""
        for coll in self._collections.values():
            if coll.dirty:
                self._persist(coll)

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    def _paths(self, name: str):
        return (
            os.path.join(self.root, f"{name}.faiss"),
            os.path.join(self.root, f"{name}.json"),
        )

    def _get_collection(self, name: str) -> _Collection:
        coll = self._collections.get(name)
        if coll is None:
            coll = _Collection(name)
            self._load(coll)
            self._collections[name] = coll
        return coll

    def _load(self, coll: _Collection):
        if not self.root:
            return
        index_path, records_path = self._paths(coll.name)
        if not os.path.exists(records_path):
            return

        with open(records_path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        coll.dimension = int(raw.get("dimension", 0))
        coll.records = raw.get("records", {})
        print(f"Loaded {len(coll.records)} vectors for collection {coll.name}")

        index_ids = raw.get("index_ids", [])
        if os.path.exists(index_path) and index_ids == list(coll.records.keys()):
            import faiss

            coll.index = faiss.read_index(index_path)
            coll.index_ids = index_ids
        else:
            coll.rebuild_index()

    def _persist(self, coll: _Collection):
        if not self.root:
            return
        index_path, records_path = self._paths(coll.name)
        try:
            with open(records_path, "w", encoding="utf-8") as f:
                json.dump(
                    {
                        "dimension": coll.dimension,
                        "records": coll.records,
                        "index_ids": coll.index_ids,
                    },
                    f,
                )
            if coll.index is not None:
                import faiss

                faiss.write_index(coll.index, index_path)
            elif os.path.exists(index_path):
                os.remove(index_path)
            coll.dirty = False
        except OSError as e:
            coll.dirty = True
            print(f"Failed to save collection {coll.name}: {e}")
