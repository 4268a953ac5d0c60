"""Unit tests for similarity metrics and the SimilarityEngine.

Tests cover:
- Raw metric values and edge cases (zero vectors, mismatched dimensions)
- Normalization into [0, 1]
- Batch scoring and the pairwise similarity matrix
"""

import math
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from vector_engine.errors import DimensionMismatch
from vector_engine.similarity import (
    DimensionPolicy,
    MetricKind,
    SimilarityConfig,
    SimilarityEngine,
    SimilarityMetric,
    cosine,
    dot_product,
    euclidean,
    manhattan,
    normalize,
    similarity_band,
)


class TestRawMetrics:
    """Tests for the module-level metric functions."""

    def test_cosine_of_vector_with_itself_is_one(self):
        """A vector is perfectly similar to itself."""
        v = [0.3, -1.2, 4.5, 0.01]
        assert cosine(v, v) == pytest.approx(1.0)

    def test_cosine_orthogonal_and_opposite(self):
        """Orthogonal vectors score 0, opposite vectors score -1."""
        assert cosine([1, 0], [0, 1]) == pytest.approx(0.0)
        assert cosine([1, 2], [-1, -2]) == pytest.approx(-1.0)

    def test_cosine_zero_vector_returns_zero(self):
        """Zero magnitude yields 0 instead of a division error."""
        assert cosine([0, 0, 0], [1, 2, 3]) == 0.0

    def test_distances(self):
        """Euclidean and Manhattan distances on a 3-4-5 triangle."""
        assert euclidean([0, 0], [3, 4]) == pytest.approx(5.0)
        assert manhattan([0, 0], [3, 4]) == pytest.approx(7.0)
        assert euclidean([1, 1], [1, 1]) == 0.0

    def test_dot_product(self):
        """Dot product is the plain inner product."""
        assert dot_product([1, 2, 3], [4, 5, 6]) == pytest.approx(32.0)

    def test_strict_policy_raises_on_mismatch(self):
        """Mismatched dimensions raise under the default policy."""
        with pytest.raises(DimensionMismatch) as exc_info:
            cosine([1, 2, 3], [1, 2])
        assert exc_info.value.expected == 3
        assert exc_info.value.actual == 2
        assert str(exc_info.value) == "Expected 3 dimensions, got 2 (Code: 422)"

    def test_degrade_policy_scores_as_not_similar(self):
        """Degrade policy returns neutral scores instead of raising."""
        degrade = DimensionPolicy.DEGRADE
        assert cosine([1, 2, 3], [1, 2], degrade) == 0.0
        assert dot_product([1, 2, 3], [1, 2], degrade) == 0.0
        assert math.isinf(euclidean([1, 2, 3], [1, 2], degrade))
        assert math.isinf(manhattan([1, 2, 3], [1, 2], degrade))

    def test_accepts_numpy_arrays(self):
        """Metrics accept numpy arrays as well as lists."""
        a = np.array([1.0, 0.0], dtype=np.float32)
        assert cosine(a, np.array([1.0, 0.0])) == pytest.approx(1.0)


class TestNormalization:
    """Tests for mapping raw scores into [0, 1]."""

    def test_cosine_normalization(self):
        """Cosine maps [-1, 1] linearly onto [0, 1]."""
        metric = SimilarityMetric.cosine()
        assert normalize(-1.0, metric) == 0.0
        assert normalize(0.0, metric) == pytest.approx(0.5)
        assert normalize(1.0, metric) == 1.0

    def test_distance_normalization(self):
        """Distances are scaled by max_distance and inverted."""
        metric = SimilarityMetric.euclidean(max_distance=10.0)
        assert metric.normalize(0.0) == 1.0
        assert metric.normalize(5.0) == pytest.approx(0.5)
        assert metric.normalize(20.0) == 0.0
        assert metric.normalize(math.inf) == 0.0

    def test_dot_product_normalization_is_clamped(self):
        """Dot product is divided by max_value and clamped."""
        metric = SimilarityMetric.dot_product(max_value=2.0)
        assert metric.normalize(1.0) == pytest.approx(0.5)
        assert metric.normalize(-1.0) == 0.0
        assert metric.normalize(5.0) == 1.0

    def test_non_cosine_metric_requires_scale(self):
        """Distance and dot metrics cannot be normalized without a scale."""
        with pytest.raises(ValueError, match="positive scale"):
            SimilarityMetric(MetricKind.MANHATTAN)
        with pytest.raises(ValueError):
            SimilarityMetric.dot_product(0.0)

    def test_required_scale(self):
        """Scaled metrics expose their calibration constant; cosine has none."""
        assert SimilarityMetric.euclidean(4.0).required_scale() == 4.0
        with pytest.raises(ValueError, match="no scale"):
            SimilarityMetric.cosine().required_scale()

    def test_sort_key_orders_best_first(self):
        """Ascending sort on sort_key puts the most similar first."""
        cosine_metric = SimilarityMetric.cosine()
        distance_metric = SimilarityMetric.euclidean(1.0)
        assert sorted([0.2, 0.9], key=cosine_metric.sort_key) == [0.9, 0.2]
        assert sorted([0.9, 0.2], key=distance_metric.sort_key) == [0.2, 0.9]
        assert distance_metric.is_distance
        assert not cosine_metric.is_distance

    def test_similarity_band(self):
        """Normalized scores bucket into high/medium/low."""
        assert similarity_band(0.95) == "high"
        assert similarity_band(0.7) == "medium"
        assert similarity_band(0.6) == "low"

    def test_metric_names(self):
        """Each metric has a display name."""
        assert SimilarityMetric.cosine().name == "Cosine Similarity"
        assert SimilarityMetric.manhattan(1.0).name == "Manhattan Distance"


class TestSimilarityEngine:
    """Tests for batch scoring and similarity matrices."""

    def test_batch_scores_sorted_by_normalized_score(self):
        """Results come back best first with original target indices."""
        engine = SimilarityEngine()
        targets = [[0, 1], [1, 0], [0.9, 0.1]]
        scores = engine.batch_scores([1, 0], targets)

        assert [s.index for s in scores] == [1, 2, 0]
        assert scores[0].normalized_score == pytest.approx(1.0)
        assert scores[0].percentage == pytest.approx(100.0)
        assert scores[2].score == pytest.approx(0.0)

    def test_batch_scores_with_executor_matches_sequential(self):
        """Fanning out over a pool gives the same ordering."""
        rng = np.random.default_rng(7)
        targets = rng.normal(size=(20, 8)).tolist()
        query = rng.normal(size=8).tolist()

        sequential = SimilarityEngine().batch_scores(query, targets)
        with ThreadPoolExecutor(max_workers=4) as pool:
            parallel = SimilarityEngine(executor=pool).batch_scores(query, targets)

        assert [s.index for s in parallel] == [s.index for s in sequential]

    def test_batch_scores_degrade_policy(self):
        """Mismatched targets score 0 under degrade policy."""
        engine = SimilarityEngine(policy=DimensionPolicy.DEGRADE)
        scores = engine.batch_scores([1, 0], [[1, 0, 0], [1, 0]])

        assert scores[0].index == 1
        assert scores[1].normalized_score == 0.0

    def test_similarity_matrix_is_symmetric_with_unit_diagonal(self):
        """Matrix is computed from the upper triangle and mirrored."""
        vectors = [[1, 0], [0, 1], [1, 1]]
        with ThreadPoolExecutor(max_workers=2) as pool:
            matrix = SimilarityEngine(executor=pool).similarity_matrix(vectors)

        assert matrix.shape == (3, 3)
        np.testing.assert_allclose(np.diag(matrix), 1.0)
        np.testing.assert_allclose(matrix, matrix.T)
        assert matrix[0, 1] == pytest.approx(0.5)

    def test_similarity_matrix_small_inputs(self):
        """Empty and single-vector inputs still produce square matrices."""
        engine = SimilarityEngine()
        assert engine.similarity_matrix([]).shape == (0, 0)
        assert engine.similarity_matrix([[1.0, 2.0]]).tolist() == [[1.0]]

    def test_from_config(self):
        """Engine built from config uses its metric and policy."""
        config = SimilarityConfig(metric="euclidean", scale=2.0, dimension_policy="degrade")
        engine = SimilarityEngine.from_config(config)

        assert engine.metric == SimilarityMetric.euclidean(2.0)
        assert engine.policy is DimensionPolicy.DEGRADE
        assert engine.score([0, 0], [0, 1]) == pytest.approx(0.5)
