"""
Statistics Primitive Tests.

============================================================
PURPOSE
============================================================
Welford accumulation, z-scores, sigmoid and harmonic mean.

============================================================
"""

import math
import statistics

import pytest

from domain_risk.profile import WelfordAccumulator
from domain_risk.stats import (
    clamp,
    harmonic_mean,
    sample_variance,
    shannon_entropy,
    sigmoid,
    weighted_average,
    welford_update,
    z_score,
)


# ============================================================
# WELFORD
# ============================================================

class TestWelford:
    """Tests for online mean/variance."""

    def test_matches_batch_statistics(self):
        """Welford mean and variance equal the two-pass results."""
        samples = [2.0, 4.0, 4.0, 4.0, 5.0, 5.0, 7.0, 9.0]
        acc = WelfordAccumulator()
        for x in samples:
            acc.update(x)

        assert acc.count == len(samples)
        assert acc.mean == pytest.approx(statistics.mean(samples))
        assert acc.variance == pytest.approx(statistics.variance(samples))

    def test_variance_zero_until_two_samples(self):
        acc = WelfordAccumulator()
        assert acc.variance == 0.0
        acc.update(10.0)
        assert acc.variance == 0.0
        assert acc.mean == 10.0

    def test_constant_stream_has_zero_m2(self):
        acc = WelfordAccumulator()
        for _ in range(20):
            welford_update(acc, 1.0)
        assert acc.count == 20
        assert acc.m2 == pytest.approx(0.0)
        assert sample_variance(acc.count, acc.m2) == 0.0


# ============================================================
# Z-SCORE / SIGMOID
# ============================================================

class TestNormalization:
    """Tests for z-score and sigmoid."""

    def test_z_score_zero_variance(self):
        assert z_score(100.0, 1.0, 0.0) == 0.0

    def test_z_score_value(self):
        assert z_score(7.0, 5.0, 4.0) == pytest.approx(1.0)

    def test_sigmoid_midpoint(self):
        assert sigmoid(0.0) == 0.5

    def test_sigmoid_steepness(self):
        assert sigmoid(1.0, steepness=2.0) == pytest.approx(1 / (1 + math.exp(-2.0)))

    def test_sigmoid_extremes_do_not_overflow(self):
        assert sigmoid(10_000.0) == 1.0
        assert sigmoid(-10_000.0) == 0.0

    def test_clamp(self):
        assert clamp(1.5) == 1.0
        assert clamp(-0.1) == 0.0
        assert clamp(0.25) == 0.25


# ============================================================
# MEANS / ENTROPY
# ============================================================

class TestMeans:
    """Tests for harmonic and weighted means."""

    def test_harmonic_mean_empty(self):
        assert harmonic_mean([]) == 0.0

    def test_harmonic_mean_equal_values(self):
        assert harmonic_mean([0.5, 0.5, 0.5]) == pytest.approx(0.5)

    def test_harmonic_mean_floors_zero(self):
        """A zero confidence is floored, not a division error."""
        result = harmonic_mean([0.0, 1.0])
        assert result == pytest.approx(2 / (1 / 0.01 + 1.0))

    def test_weighted_average(self):
        assert weighted_average([1.0, 0.0], [3.0, 1.0]) == pytest.approx(0.75)
        assert weighted_average([], []) == 0.0

    def test_shannon_entropy(self):
        assert shannon_entropy("") == 0.0
        assert shannon_entropy("aaaa") == 0.0
        assert shannon_entropy("abcd") == pytest.approx(2.0)
