"""
Domain Risk Engine - Risk Aggregator.

============================================================
PURPOSE
============================================================
Combine the four metric results into one risk score.

============================================================
AGGREGATION
============================================================
score      = sum(value * weight) / sum(weight)   over enabled metrics
score      = clamp(score * sensitivity multiplier)
confidence = harmonic mean of contributing confidences

Nothing enabled (or total weight 0): score 0.5, confidence 0.0.

============================================================
"""

import logging
from typing import Iterable, List, Set

from .config import EngineConfig, ThresholdsConfig
from .stats import clamp, harmonic_mean
from .types import AggregateResult, Contribution, MetricId, MetricResult, RiskLevel


logger = logging.getLogger(__name__)


class RiskAggregator:
    """Weighted, sensitivity-adjusted combination of metric results."""

    def aggregate(self, results: Iterable[MetricResult], config: EngineConfig) -> AggregateResult:
        """
        Aggregate metric results.

        Args:
            results: Metric results; ids may use the M1..M4 aliases
            config: Configuration snapshot

        Returns:
            AggregateResult
        """
        weighted_sum = 0.0
        total_weight = 0.0
        confidences: List[float] = []
        contributions: List[Contribution] = []
        seen: Set[MetricId] = set()

        for result in results:
            metric_id = MetricId.from_alias(result.metric_id)
            if metric_id is None:
                logger.warning(f"Ignoring result for unknown metric {result.metric_id!r}")
                continue
            if metric_id in seen:
                logger.warning(f"Duplicate result for {metric_id.value}, keeping the first")
                continue
            seen.add(metric_id)

            group = config.groups.get(metric_id)
            if not group.enabled or group.weight <= 0:
                continue

            value = clamp(result.value)
            confidence = clamp(result.confidence)
            contribution = value * group.weight

            weighted_sum += contribution
            total_weight += group.weight
            confidences.append(confidence)
            contributions.append(
                Contribution(
                    metric_id=metric_id,
                    value=value,
                    weight=group.weight,
                    contribution=contribution,
                    confidence=confidence,
                )
            )

        sensitivity = config.sensitivity
        if total_weight <= 0:
            return AggregateResult(
                risk_score=0.5,
                confidence=0.0,
                base_score=0.5,
                total_weight=0.0,
                sensitivity=sensitivity,
                contributions=[],
            )

        base = clamp(weighted_sum / total_weight)
        return AggregateResult(
            risk_score=clamp(base * sensitivity.multiplier),
            confidence=clamp(harmonic_mean(confidences)),
            base_score=base,
            total_weight=total_weight,
            sensitivity=sensitivity,
            contributions=contributions,
        )

    def classify(self, score: float, thresholds: ThresholdsConfig) -> RiskLevel:
        return RiskLevel.from_score(
            score,
            critical=thresholds.critical,
            high=thresholds.high,
            medium=thresholds.medium,
        )


__all__ = ["RiskAggregator"]
