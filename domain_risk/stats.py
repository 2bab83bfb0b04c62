"""
Domain Risk Engine - Statistics Primitives.

============================================================
PURPOSE
============================================================
Pure numeric helpers shared by the metric calculators and the
aggregator.

- Welford online mean/variance (no replay of history)
- Z-score against a running accumulator
- Sigmoid / logistic normalization
- Harmonic mean of confidences

============================================================
DESIGN PRINCIPLES
============================================================
- No state, no I/O
- Never divide by zero
- Overflow-safe exponentials

============================================================
"""

import math
from typing import Iterable, List, Sequence


# ============================================================
# WELFORD
# ============================================================


def welford_update(acc, value: float) -> None:
    """
    Apply one observation to a Welford accumulator in place.

    The accumulator only needs mutable ``count``, ``mean`` and ``m2``
    attributes (see ``profile.WelfordAccumulator``).

    Args:
        acc: Accumulator to update
        value: New observation
    """
    acc.count += 1
    delta = value - acc.mean
    acc.mean += delta / acc.count
    delta2 = value - acc.mean
    acc.m2 += delta * delta2


def sample_variance(count: int, m2: float) -> float:
    """Sample variance from Welford state; 0 until two samples exist."""
    if count > 1:
        return max(0.0, m2 / (count - 1))
    return 0.0


def z_score(value: float, mean: float, variance: float) -> float:
    """
    Standard score of ``value``.

    Returns 0 when the variance is not positive, so a flat history
    never produces an infinite score.
    """
    if variance > 0:
        return (value - mean) / math.sqrt(variance)
    return 0.0


# ============================================================
# NORMALIZATION
# ============================================================


def sigmoid(x: float, steepness: float = 1.0) -> float:
    """Logistic curve ``1 / (1 + exp(-steepness * x))``."""
    t = -steepness * x
    # math.exp overflows above ~709
    if t > 700:
        return 0.0
    if t < -700:
        return 1.0
    return 1.0 / (1.0 + math.exp(t))


def clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    return max(lower, min(upper, value))


def harmonic_mean(values: Iterable[float], floor: float = 0.01) -> float:
    """
    Harmonic mean with each input floored at ``floor``.

    A single low input drags the result down much more than it would
    an arithmetic mean, which makes it a conservative way to combine
    confidences.

    Args:
        values: Inputs (typically confidences in [0, 1])
        floor: Lower bound applied before inversion

    Returns:
        Harmonic mean, or 0.0 for an empty input
    """
    items: List[float] = list(values)
    if not items:
        return 0.0
    inverse_sum = sum(1.0 / max(v, floor) for v in items)
    return len(items) / inverse_sum


def weighted_average(values: Sequence[float], weights: Sequence[float]) -> float:
    numerator = 0.0
    denominator = 0.0
    for value, weight in zip(values, weights):
        numerator += value * weight
        denominator += weight
    return numerator / denominator if denominator > 0 else 0.0


def shannon_entropy(text: str) -> float:
    """Character-frequency Shannon entropy in bits."""
    if not text:
        return 0.0
    counts = {}
    for ch in text:
        counts[ch] = counts.get(ch, 0) + 1
    n = float(len(text))
    entropy = 0.0
    for count in counts.values():
        p = count / n
        entropy -= p * math.log2(p)
    return entropy


__all__ = [
    "welford_update",
    "sample_variance",
    "z_score",
    "sigmoid",
    "clamp",
    "harmonic_mean",
    "weighted_average",
    "shannon_entropy",
]
