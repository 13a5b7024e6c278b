"""Unit tests for embedding comparison functions.

Tests cover:
- Cosine similarity range, symmetry and degenerate vectors
- Dimension checks
- Euclidean distance
- Mean similarity against a member list
"""

import numpy as np
import pytest

from crowdlens.errors import CrowdLensError, DimensionMismatch
from crowdlens.similarity import cosine_similarity, euclidean_distance, mean_similarity


class TestCosineSimilarity:
    """Tests for cosine_similarity."""

    def test_identical_vectors(self):
        """A vector is fully similar to itself."""
        v = [0.3, -0.2, 0.9]
        assert cosine_similarity(v, v) == pytest.approx(1.0)

    def test_opposite_vectors(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_symmetric(self):
        """Order of arguments doesn't matter."""
        rng = np.random.default_rng(7)
        a = rng.normal(size=16)
        b = rng.normal(size=16)
        assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))

    def test_scale_invariant(self):
        a = np.array([1.0, 2.0, 3.0])
        b = np.array([0.5, -1.0, 2.0])
        assert cosine_similarity(a * 10, b) == pytest.approx(cosine_similarity(a, b))

    def test_bounded(self):
        """Random pairs stay within [-1, 1]."""
        rng = np.random.default_rng(11)
        for _ in range(50):
            a = rng.normal(size=32)
            b = rng.normal(size=32)
            assert -1.0 <= cosine_similarity(a, b) <= 1.0

    def test_zero_vector(self):
        """Zero-magnitude vectors never match anything."""
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [0.0, 0.0]) == 0.0

    def test_dimension_mismatch(self):
        with pytest.raises(DimensionMismatch) as exc_info:
            cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])

        assert exc_info.value.len_a == 2
        assert exc_info.value.len_b == 3

    def test_dimension_mismatch_is_value_error(self):
        """Callers may catch the builtin or the package base class."""
        with pytest.raises(ValueError):
            cosine_similarity([1.0], [1.0, 2.0])
        with pytest.raises(CrowdLensError):
            cosine_similarity([1.0], [1.0, 2.0])

    def test_inputs_not_mutated(self):
        a = np.array([3.0, 4.0])
        b = np.array([4.0, 3.0])
        cosine_similarity(a, b)
        np.testing.assert_array_equal(a, [3.0, 4.0])
        np.testing.assert_array_equal(b, [4.0, 3.0])


class TestEuclideanDistance:
    """Tests for euclidean_distance."""

    def test_distance(self):
        assert euclidean_distance([0.0, 0.0], [3.0, 4.0]) == pytest.approx(5.0)

    def test_same_point(self):
        assert euclidean_distance([1.0, 2.0], [1.0, 2.0]) == 0.0

    def test_dimension_mismatch(self):
        with pytest.raises(DimensionMismatch):
            euclidean_distance([1.0], [1.0, 2.0])


class TestMeanSimilarity:
    """Tests for mean_similarity."""

    def test_empty_members(self):
        assert mean_similarity([1.0, 0.0], []) == 0.0

    def test_mean_of_pairwise(self):
        """The score is the mean of per-member similarities, not a centroid dot product."""
        query = [1.0, 0.0]
        members = [[1.0, 0.0], [0.0, 1.0]]
        assert mean_similarity(query, members) == pytest.approx(0.5)

    def test_differs_from_centroid(self):
        query = np.array([1.0, 0.0])
        members = [np.array([1.0, 0.0]), np.array([0.0, 1.0])]
        centroid = np.mean(members, axis=0)
        assert mean_similarity(query, members) != pytest.approx(cosine_similarity(query, centroid))

    def test_member_dimension_mismatch(self):
        with pytest.raises(DimensionMismatch):
            mean_similarity([1.0, 0.0], [[1.0, 0.0], [1.0, 0.0, 0.0]])
