"""
Clustering module for Folio.

K-means over chunk embeddings with k-means++ seeding. Euclidean distance,
no normalization beyond what the embedding provider already applies.
"""

import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from errors import DimensionMismatch


@dataclass
class VectorItem:
    id: str
    vector: List[float]


@dataclass
class Cluster:
    id: str
    title: str
    items: List[str] = field(default_factory=list)
    centroid: List[float] = field(default_factory=list)


def suggest_cluster_count(n_items: int) -> int:
    """Rule-of-thumb k = sqrt(n / 2), at least 1."""
    if n_items <= 0:
        return 0
    return max(1, int(round(math.sqrt(n_items / 2))))


class KMeansClusterer:
    """
    Partition vectors into at most k groups.

    Args:
        max_iterations: Upper bound on assignment/update rounds (default: 100)
        random_state: Seed for the default generator; ignored when ``rng`` is given
        rng: numpy Generator used for seeding; makes runs reproducible in tests
    """

    def __init__(
        self,
        max_iterations: int = 100,
        random_state: Optional[int] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.max_iterations = max_iterations
        self.rng = rng if rng is not None else np.random.default_rng(random_state)
        self.n_iterations_ = 0

    def cluster(self, vectors: Sequence[VectorItem], k: int) -> List[Cluster]:
        """
        Cluster vectors and return one Cluster per non-empty partition.

        Raises:
            DimensionMismatch: If the vectors do not all share one length
            ValueError: If k is smaller than 1
        """
        if not vectors:
            return []
        if k < 1:
            raise ValueError(f"k must be at least 1, got {k}")

        points = self._as_matrix(vectors)

        if len(vectors) <= k:
            # Degenerate case: every vector is its own cluster
            return [
                Cluster(
                    id=f"cluster_{i}",
                    title=f"Group {i + 1}",
                    items=[item.id],
                    centroid=points[i].tolist(),
                )
                for i, item in enumerate(vectors)
            ]

        centroids = self.initialize_centroids(points, k)
        assignments = np.full(len(points), -1, dtype=np.int64)
        self.n_iterations_ = 0

        for _ in range(self.max_iterations):
            self.n_iterations_ += 1
            new_assignments = self.assign(points, centroids)
            if np.array_equal(new_assignments, assignments):
                break
            assignments = new_assignments
            centroids = self.update_centroids(points, assignments, centroids)

        clusters: List[Cluster] = []
        for j in range(k):
            members = np.flatnonzero(assignments == j)
            if members.size == 0:
                continue
            clusters.append(
                Cluster(
                    id=f"cluster_{j}",
                    title=f"Group {j + 1}",
                    items=[vectors[i].id for i in members],
                    centroid=centroids[j].tolist(),
                )
            )

        print(
            f"Clustered {len(vectors)} vectors into {len(clusters)} groups "
            f"(k={k}, iterations={self.n_iterations_})"
        )
        return clusters

    def initialize_centroids(self, points: np.ndarray, k: int) -> np.ndarray:
        """k-means++ seeding: sample far-away points with probability ~ D(x)^2."""
        n = len(points)
        chosen = [int(self.rng.integers(n))]

        for _ in range(1, k):
            seeds = points[chosen]
            dists = np.sqrt(((points[:, None, :] - seeds[None, :, :]) ** 2).sum(axis=2))
            weights = dists.min(axis=1) ** 2
            weights[chosen] = 0.0
            total = float(weights.sum())

            if total <= 0.0:
                # Remaining points coincide with existing seeds
                remaining = [i for i in range(n) if i not in chosen]
                chosen.append(int(remaining[int(self.rng.integers(len(remaining)))]))
                continue

            threshold = float(self.rng.random()) * total
            cumulative = np.cumsum(weights)
            index = int(np.searchsorted(cumulative, threshold, side="right"))
            chosen.append(min(index, n - 1))

        return points[chosen].copy()

    def assign(self, points: np.ndarray, centroids: np.ndarray) -> np.ndarray:
        """Nearest centroid per point; ties go to the lowest centroid index."""
        dists = np.sqrt(((points[:, None, :] - centroids[None, :, :]) ** 2).sum(axis=2))
        return np.argmin(dists, axis=1)

    def update_centroids(
        self, points: np.ndarray, assignments: np.ndarray, centroids: np.ndarray
    ) -> np.ndarray:
        """Mean of assigned points; a centroid with no points stays put."""
        updated = centroids.copy()
        for j in range(len(centroids)):
            members = points[assignments == j]
            if len(members):
                updated[j] = members.mean(axis=0)
        return updated

    @staticmethod
    def inertia(points: np.ndarray, assignments: np.ndarray, centroids: np.ndarray) -> float:
        """Total within-cluster squared distance."""
        diffs = points - centroids[assignments]
        return float((diffs ** 2).sum())

    @staticmethod
    def _as_matrix(vectors: Sequence[VectorItem]) -> np.ndarray:
        dimension = len(vectors[0].vector)
        for item in vectors:
            if len(item.vector) != dimension:
                raise DimensionMismatch(dimension, len(item.vector), f"vector '{item.id}'")
        return np.asarray([item.vector for item in vectors], dtype=np.float64)
