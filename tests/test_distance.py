"""Tests for quantization, cosine similarity and the distance matrix."""
import math

import numpy as np
import pytest

from evidence_graph.dataclass import Stance
from evidence_graph.distance import (
    adjust_similarity,
    build_distance_matrix,
    compute_cohesion,
    cosine_similarity,
    mean_vector,
    pairwise_cohesion,
    quantize,
)

from conftest import EMBEDDING_X, EMBEDDING_Y, make_paragraph, unit, vector_at


class TestQuantize:

    @pytest.mark.parametrize("value", [0.1234567, 0.9999995, -0.3333333, 0.5, 1.0, 0.0])
    def test_idempotent(self, value):
        assert quantize(quantize(value)) == quantize(value)

    def test_rounds_half_up(self):
        assert quantize(0.1234564) == pytest.approx(0.123456)
        assert quantize(0.12345678) == pytest.approx(0.123457)

    def test_non_finite_passes_through(self):
        assert math.isinf(quantize(math.inf))
        assert math.isnan(quantize(math.nan))


class TestCosineSimilarity:

    def test_orthogonal_and_identical(self):
        x, y = np.array(EMBEDDING_X), np.array(EMBEDDING_Y)
        assert cosine_similarity(x, y) == 0.0
        assert cosine_similarity(x, x) == pytest.approx(1.0)

    def test_clamped_to_unit_range(self):
        a = np.array([1.0000001, 0.0])
        assert cosine_similarity(a, a) <= 1.0
        assert cosine_similarity(a, -a) >= -1.0

    def test_random_unit_vectors_in_range(self):
        rng = np.random.default_rng(7)
        for _ in range(20):
            a, b = unit(rng.normal(size=8)), unit(rng.normal(size=8))
            assert -1.0 <= cosine_similarity(a, b) <= 1.0


class TestAdjustSimilarity:

    def test_antagonistic_stances_dampened(self):
        a = make_paragraph("p_0", Stance.DIRECTIVE)
        b = make_paragraph("p_1", Stance.WARNING)
        assert adjust_similarity(0.5, a, b) == pytest.approx(0.3)

    def test_same_stance_boosted(self):
        a = make_paragraph("p_0", Stance.FACTUAL)
        b = make_paragraph("p_1", Stance.FACTUAL)
        assert adjust_similarity(0.5, a, b) == pytest.approx(0.55)

    def test_cross_model_boost_only_above_floor(self):
        a = make_paragraph("p_0", Stance.PRECONDITION, model_index=0)
        b = make_paragraph("p_1", Stance.CONSEQUENCE, model_index=1)
        assert adjust_similarity(0.5, a, b) == pytest.approx(0.5 * 1.05)
        assert adjust_similarity(0.8, a, b) == pytest.approx(0.8 * 1.05 * 1.15)

    def test_result_clamped(self):
        a = make_paragraph("p_0", Stance.FACTUAL, model_index=0)
        b = make_paragraph("p_1", Stance.FACTUAL, model_index=1)
        assert adjust_similarity(0.95, a, b) == 1.0


class TestDistanceMatrix:

    def test_symmetric_with_zero_diagonal(self):
        vectors = {"a": vector_at(1.0), "b": vector_at(0.6), "c": vector_at(0.2)}
        d = build_distance_matrix(["a", "b", "c"], vectors)
        for i in range(3):
            assert d[i][i] == 0.0
            for j in range(3):
                assert d[i][j] == d[j][i]
        assert d[0][1] == pytest.approx(0.4)

    def test_missing_vector_is_infinitely_far(self):
        d = build_distance_matrix(["a", "b"], {"a": vector_at(1.0)})
        assert math.isinf(d[0][1])


class TestCohesion:

    def test_singleton_cohesion_is_one(self):
        vectors = {"a": vector_at(1.0)}
        assert compute_cohesion(["a"], "a", vectors) == 1.0
        assert pairwise_cohesion(["a"], vectors) == 1.0

    def test_cohesion_against_centroid(self):
        vectors = {"a": vector_at(1.0), "b": vector_at(0.8), "c": vector_at(0.6)}
        assert compute_cohesion(["a", "b", "c"], "a", vectors) == pytest.approx(0.7)

    def test_mean_vector_is_unit_length(self):
        mean = mean_vector([vector_at(1.0), vector_at(0.0)])
        assert np.linalg.norm(mean) == pytest.approx(1.0)
        assert mean_vector([]) is None
