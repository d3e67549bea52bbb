"""
Unit tests for k-means clustering.
"""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from clustering import KMeansClusterer, VectorItem, suggest_cluster_count
from errors import DimensionMismatch


def _blobs(seed=7, per_blob=10):
    """Three well separated 2-d blobs."""
    rng = np.random.default_rng(seed)
    centers = [(0.0, 0.0), (10.0, 10.0), (-10.0, 10.0)]
    items = []
    for b, center in enumerate(centers):
        for i in range(per_blob):
            point = np.asarray(center) + rng.normal(scale=0.3, size=2)
            items.append(VectorItem(id=f"b{b}_{i}", vector=point.tolist()))
    return items


class TestKMeansClusterer:
    """Test suite for KMeansClusterer."""

    def setup_method(self):
        """Set up test fixtures."""
        self.clusterer = KMeansClusterer(random_state=42)

    def test_empty_input(self):
        assert self.clusterer.cluster([], 3) == []

    def test_invalid_k(self):
        with pytest.raises(ValueError):
            self.clusterer.cluster([VectorItem(id="a", vector=[1.0])], 0)

    def test_singletons_when_k_not_below_n(self):
        items = [VectorItem(id=f"v{i}", vector=[float(i), 0.0]) for i in range(3)]
        clusters = self.clusterer.cluster(items, 5)

        assert [c.items for c in clusters] == [["v0"], ["v1"], ["v2"]]
        assert [c.title for c in clusters] == ["Group 1", "Group 2", "Group 3"]
        assert clusters[1].centroid == [1.0, 0.0]

    def test_every_item_assigned_exactly_once(self):
        items = _blobs()
        clusters = self.clusterer.cluster(items, 4)

        assigned = [item_id for c in clusters for item_id in c.items]
        assert sorted(assigned) == sorted(item.id for item in items)
        assert len(clusters) <= 4
        assert all(c.items for c in clusters)

    def test_separated_blobs_are_recovered(self):
        clusters = self.clusterer.cluster(_blobs(), 3)

        groups = sorted(sorted({item_id.split("_")[0] for item_id in c.items}) for c in clusters)
        assert groups == [["b0"], ["b1"], ["b2"]]

    def test_same_seed_same_result(self):
        items = _blobs(seed=3)
        first = KMeansClusterer(rng=np.random.default_rng(11)).cluster(items, 3)
        second = KMeansClusterer(rng=np.random.default_rng(11)).cluster(items, 3)

        assert [c.items for c in first] == [c.items for c in second]

    def test_stops_within_max_iterations(self):
        clusterer = KMeansClusterer(max_iterations=100, random_state=1)
        clusterer.cluster(_blobs(), 3)

        assert 1 <= clusterer.n_iterations_ <= 100

    def test_inertia_never_increases(self):
        points = np.asarray([item.vector for item in _blobs(seed=5)])
        clusterer = KMeansClusterer(random_state=5)
        centroids = clusterer.initialize_centroids(points, 4)

        previous = None
        for _ in range(100):
            assignments = clusterer.assign(points, centroids)
            current = clusterer.inertia(points, assignments, centroids)
            if previous is not None:
                assert current <= previous + 1e-9
            previous = current
            centroids = clusterer.update_centroids(points, assignments, centroids)

    def test_seeding_picks_distinct_points(self):
        points = np.asarray([[0.0, 0.0], [0.0, 0.0], [5.0, 5.0], [9.0, 1.0]])
        centroids = self.clusterer.initialize_centroids(points, 3)

        assert len({tuple(c) for c in centroids}) == 3

    def test_duplicate_points_still_seed(self):
        points = np.zeros((4, 2))
        centroids = self.clusterer.initialize_centroids(points, 3)
        assert centroids.shape == (3, 2)

    def test_assign_ties_go_to_lowest_index(self):
        points = np.asarray([[0.0, 0.0]])
        centroids = np.asarray([[1.0, 0.0], [-1.0, 0.0]])
        assert self.clusterer.assign(points, centroids).tolist() == [0]

    def test_empty_centroid_keeps_position(self):
        points = np.asarray([[0.0, 0.0], [1.0, 1.0]])
        centroids = np.asarray([[0.5, 0.5], [99.0, 99.0]])
        assignments = np.asarray([0, 0])

        updated = self.clusterer.update_centroids(points, assignments, centroids)
        assert updated[1].tolist() == [99.0, 99.0]
        assert updated[0].tolist() == [0.5, 0.5]

    def test_ragged_vectors_rejected(self):
        items = [VectorItem(id="a", vector=[1.0, 0.0]), VectorItem(id="b", vector=[1.0])]
        with pytest.raises(DimensionMismatch):
            self.clusterer.cluster(items, 1)


class TestSuggestClusterCount:
    """Tests for the default cluster count."""

    @pytest.mark.parametrize("n,k", [(0, 0), (1, 1), (2, 1), (8, 2), (18, 3), (50, 5)])
    def test_suggest(self, n, k):
        assert suggest_cluster_count(n) == k
