"""
Tests for the in-memory vector indexes.

This test module verifies:
1. Exact search (FlatVectorIndex) for each metric
2. Upsert/replace/delete and filters
3. Dimension checks
4. Clustered (IVF) index: exactness when probing every list, recall at
   the default n_probe, filter widening
"""

import numpy as np
import pytest

from ragcore.core.exceptions import ConfigurationError, DimensionMismatchError
from ragcore.services.index.vector_index import (
    ClusteredVectorIndex,
    DistanceMetric,
    FlatVectorIndex,
    create_vector_index,
)


def clustered_data(n_points: int = 2000, n_centers: int = 20, dim: int = 16, seed: int = 7):
    """Gaussian blobs around random centers."""
    rng = np.random.default_rng(seed)
    centers = rng.normal(size=(n_centers, dim)) * 4.0
    labels = rng.integers(n_centers, size=n_points)
    points = centers[labels] + rng.normal(size=(n_points, dim))
    return points.astype(np.float32), labels


@pytest.mark.asyncio
class TestFlatVectorIndex:
    """Exact nearest-neighbour search."""

    async def test_query_orders_by_distance(self):
        index = FlatVectorIndex(dimension=3, metric="cosine")
        await index.upsert_many([
            ("a", [1.0, 0.0, 0.0], {"document_id": "d1"}),
            ("b", [0.7, 0.7, 0.0], {"document_id": "d1"}),
            ("c", [0.0, 0.0, 1.0], {"document_id": "d2"}),
        ])

        hits = await index.query([1.0, 0.1, 0.0], k=3)

        assert [h.chunk_id for h in hits] == ["a", "b", "c"]
        assert hits[0].similarity > hits[1].similarity > hits[2].similarity
        assert hits[0].metadata == {"document_id": "d1"}

    async def test_k_limits_results(self):
        index = FlatVectorIndex(dimension=2)
        await index.upsert_many([(f"c{i}", [1.0, float(i)], None) for i in range(10)])

        assert len(await index.query([1.0, 0.0], k=4)) == 4
        assert await index.query([1.0, 0.0], k=0) == []

    async def test_ties_broken_by_chunk_id(self):
        index = FlatVectorIndex(dimension=2)
        await index.upsert_many([("z", [1.0, 0.0], None), ("m", [1.0, 0.0], None), ("a", [1.0, 0.0], None)])

        hits = await index.query([1.0, 0.0], k=3)

        assert [h.chunk_id for h in hits] == ["a", "m", "z"]

    async def test_upsert_replaces(self):
        index = FlatVectorIndex(dimension=2)
        await index.upsert("x", [1.0, 0.0])
        await index.upsert("x", [0.0, 1.0], {"v": 2})

        hits = await index.query([0.0, 1.0], k=1)

        assert await index.count() == 1
        assert hits[0].chunk_id == "x"
        assert hits[0].distance == pytest.approx(0.0, abs=1e-6)
        assert hits[0].metadata == {"v": 2}

    async def test_delete(self):
        index = FlatVectorIndex(dimension=2)
        await index.upsert_many([("a", [1.0, 0.0], None), ("b", [0.0, 1.0], None)])

        assert await index.delete("a") is True
        assert await index.delete("a") is False
        assert await index.delete_many(["b", "missing"]) == 1
        assert await index.count() == 0
        assert await index.query([1.0, 0.0], k=5) == []

    async def test_filters(self):
        index = FlatVectorIndex(dimension=2)
        await index.upsert_many([
            ("a", [1.0, 0.0], {"content_type": "text"}),
            ("b", [1.0, 0.1], {"content_type": "audio"}),
        ])

        hits = await index.query([1.0, 0.0], k=5, filters={"content_type": "audio"})

        assert [h.chunk_id for h in hits] == ["b"]

    async def test_dimension_mismatch(self):
        index = FlatVectorIndex(dimension=3)

        with pytest.raises(DimensionMismatchError):
            await index.upsert("a", [1.0, 0.0])
        with pytest.raises(DimensionMismatchError):
            await index.query([1.0, 0.0], k=1)

    async def test_l2_and_dot_metrics(self):
        l2 = FlatVectorIndex(dimension=2, metric="l2")
        dot = FlatVectorIndex(dimension=2, metric="dot")
        items = [("near", [1.0, 1.0], None), ("far", [10.0, 10.0], None)]
        await l2.upsert_many(items)
        await dot.upsert_many(items)

        assert (await l2.query([1.0, 1.0], k=1))[0].chunk_id == "near"
        # Inner product favours the longer vector
        assert (await dot.query([1.0, 1.0], k=1))[0].chunk_id == "far"

    async def test_zero_vector_cosine(self):
        """A zero vector has cosine distance 1 instead of NaN."""
        index = FlatVectorIndex(dimension=2)
        await index.upsert("zero", [0.0, 0.0])

        hits = await index.query([1.0, 0.0], k=1)

        assert hits[0].distance == pytest.approx(1.0)


class TestDistanceMetric:
    """Metric conversions."""

    def test_to_similarity(self):
        assert DistanceMetric.COSINE.to_similarity(0.25) == pytest.approx(0.75)
        assert DistanceMetric.L2.to_similarity(1.0) == pytest.approx(0.5)
        assert DistanceMetric.DOT.to_similarity(-3.0) == pytest.approx(3.0)

    def test_factory(self):
        assert isinstance(create_vector_index("flat", dimension=4), FlatVectorIndex)
        assert isinstance(create_vector_index("clustered", dimension=4), ClusteredVectorIndex)
        with pytest.raises(ConfigurationError):
            create_vector_index("hnsw", dimension=4)


@pytest.mark.asyncio
class TestClusteredVectorIndex:
    """Approximate IVF index."""

    async def build(self, metric: str = "cosine"):
        points, labels = clustered_data()
        flat = FlatVectorIndex(dimension=points.shape[1], metric=metric)
        ivf = ClusteredVectorIndex(
            dimension=points.shape[1], metric=metric, train_threshold=500, min_probes=4, seed=3
        )
        items = [(f"p{i:05d}", points[i], {"label": int(labels[i])}) for i in range(len(points))]
        await flat.upsert_many(items)
        await ivf.upsert_many(items)
        return points, flat, ivf

    async def test_exact_below_training_threshold(self):
        ivf = ClusteredVectorIndex(dimension=2, train_threshold=100)
        await ivf.upsert_many([("a", [1.0, 0.0], None), ("b", [0.0, 1.0], None)])

        assert not ivf.trained
        assert [h.chunk_id for h in await ivf.query([1.0, 0.0], k=2)] == ["a", "b"]

    async def test_trains_on_threshold(self):
        _, _, ivf = await self.build()

        assert ivf.trained
        assert ivf.n_lists == round(np.sqrt(2000))
        assert ivf.default_n_probe() == max(4, int(np.ceil(ivf.n_lists / 4)))

    async def test_probing_every_list_is_exact(self):
        points, flat, ivf = await self.build()
        rng = np.random.default_rng(11)

        for q in rng.choice(len(points), size=10, replace=False):
            query = points[q] + rng.normal(size=points.shape[1]).astype(np.float32) * 0.1
            exact = await flat.query(query, k=10)
            probed = await ivf.query(query, k=10, n_probe=ivf.n_lists)
            assert [h.chunk_id for h in probed] == [h.chunk_id for h in exact]

    @pytest.mark.parametrize("metric", ["cosine", "l2"])
    async def test_default_recall(self, metric):
        """recall@10 at the default n_probe stays at or above 0.9."""
        points, flat, ivf = await self.build(metric)
        rng = np.random.default_rng(5)

        recalls = []
        for q in rng.choice(len(points), size=25, replace=False):
            query = points[q] + rng.normal(size=points.shape[1]).astype(np.float32) * 0.1
            exact = {h.chunk_id for h in await flat.query(query, k=10)}
            approx = {h.chunk_id for h in await ivf.query(query, k=10)}
            recalls.append(len(exact & approx) / 10)

        assert np.mean(recalls) >= 0.9

    async def test_filters_widen_probe(self):
        """A selective filter still yields k hits when enough exist."""
        points, flat, ivf = await self.build()
        target = {"label": 3}
        available = len(await flat.query(points[0], k=len(points), filters=target))

        hits = await ivf.query(points[0], k=10, filters=target, n_probe=1)

        assert len(hits) == min(10, available)
        assert all(h.metadata["label"] == 3 for h in hits)

    async def test_new_vectors_join_lists_between_retrains(self):
        _, _, ivf = await self.build()
        lists_before = ivf.n_lists

        await ivf.upsert("extra", [0.5] * 16, {"label": -1})

        assert ivf.n_lists == lists_before
        hits = await ivf.query([0.5] * 16, k=1, n_probe=ivf.n_lists)
        assert hits[0].chunk_id == "extra"
