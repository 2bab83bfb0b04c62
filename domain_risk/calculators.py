"""
Domain Risk Engine - Metric Calculators.

============================================================
PURPOSE
============================================================
One calculator per metric group. Each calculator:
1. Reads an immutable snapshot of the domain profile
2. Produces a MetricResult (value + confidence in [0, 1])
3. Returns the ProfileMutation describing what it learned

============================================================
DESIGN PRINCIPLES
============================================================
- Calculators never read or write the profile store
- Recoverable conditions (disabled group, invalid input, thin
  history, failed lookups) become neutral results with a reason
- A disabled group still returns its learning mutation so the
  baseline keeps accumulating

============================================================
METRICS
============================================================
RATE        z-score of the busiest window's per-minute rate
ENTROPY     Shannon entropy of the second-level label
REPUTATION  external verdicts + domain age + TLS validity
BEHAVIOR    deviation from the domain's own visiting pattern

============================================================
"""

import asyncio
import logging
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .clock import ClockProtocol, SystemClock, to_utc
from .config import CERT_VALIDITY_SOURCE, EngineConfig, ReputationGroupConfig
from .domains import hosts_related, is_sensitive_path, second_level_label
from .exceptions import (
    ConfigurationDisabled,
    DomainRiskError,
    ExternalLookupFailure,
    InsufficientHistory,
    InvalidInput,
)
from .mutations import (
    BehaviorMutation,
    NoMutation,
    ProfileMutation,
    RateMutation,
    ReputationMutation,
)
from .profile import WINDOW_SPANS, DomainProfile, ReputationEntry
from .reputation.cache import CachedVerdict, ReputationCache
from .reputation.sources import ReputationSource, SourceVerdict
from .stats import clamp, shannon_entropy, sigmoid, z_score
from .types import MetricId, MetricResult, RequestContext


logger = logging.getLogger(__name__)

CONFIDENCE_SATURATION = 50          # Observations for full confidence
DEFAULT_SOURCE_CONFIDENCE = 0.8
ALPHABET_SIZE = 26
ENTROPY_CONFIDENCE_LENGTH = 14


@dataclass(frozen=True)
class CalculationOutcome:
    """Result of one calculator plus the change it wants merged."""

    result: MetricResult
    mutation: ProfileMutation = field(default_factory=NoMutation)


def _error_result(
    metric_id: MetricId,
    value: float,
    confidence: float,
    error: DomainRiskError,
) -> MetricResult:
    return MetricResult(metric_id, value, confidence, {"reason": error.message, **error.context})


# ============================================================
# BASE CALCULATOR
# ============================================================


class BaseMetricCalculator(ABC):
    """
    Abstract base class for metric calculators.

    Subclasses implement ``compute`` and, when they learn from every
    event, ``learn``.
    """

    @property
    @abstractmethod
    def metric_id(self) -> MetricId:
        """Return the metric this calculator produces."""
        pass

    async def calculate(
        self,
        domain: str,
        context: RequestContext,
        snapshot: DomainProfile,
        config: EngineConfig,
    ) -> CalculationOutcome:
        """
        Score one event.

        Args:
            domain: Registrable domain
            context: Inbound request
            snapshot: Read-only copy of the profile before this event
            config: Configuration snapshot for this evaluation

        Returns:
            CalculationOutcome with result and mutation
        """
        group = config.groups.get(self.metric_id)
        if not group.enabled:
            disabled = ConfigurationDisabled(self.metric_id.value)
            return CalculationOutcome(
                _error_result(self.metric_id, 0.0, 0.0, disabled),
                self.learn(domain, context, snapshot),
            )
        return await self.compute(domain, context, snapshot, config)

    @abstractmethod
    async def compute(
        self,
        domain: str,
        context: RequestContext,
        snapshot: DomainProfile,
        config: EngineConfig,
    ) -> CalculationOutcome:
        pass

    def learn(
        self,
        domain: str,
        context: RequestContext,
        snapshot: DomainProfile,
    ) -> ProfileMutation:
        """Mutation recorded for the event regardless of scoring."""
        return NoMutation()


# ============================================================
# RATE (M1)
# ============================================================


class RateCalculator(BaseMetricCalculator):
    """
    Request-rate anomaly.

    Picks the window with the highest per-minute rate and scores its
    z-score against that window's running statistics.
    """

    @property
    def metric_id(self) -> MetricId:
        return MetricId.RATE

    async def compute(self, domain, context, snapshot, config) -> CalculationOutcome:
        now = context.epoch

        rates: Dict[str, float] = {}
        selected: Optional[str] = None
        for name, span in WINDOW_SPANS.items():
            count = snapshot.time_series[name].count_since(now - span)
            rates[name] = count / span * 60.0
            # strict comparison keeps the shortest window on ties
            if selected is None or rates[name] > rates[selected]:
                selected = name

        stats = snapshot.rate_stats[selected]
        z = z_score(rates[selected], stats.mean, stats.variance)
        value = sigmoid(z, steepness=2.0)
        confidence = min(stats.count / CONFIDENCE_SATURATION, 1.0)

        result = MetricResult(
            MetricId.RATE,
            value,
            confidence,
            {
                "rates_per_minute": {k: round(v, 4) for k, v in rates.items()},
                "selected_window": selected,
                "z_score": round(z, 4),
                "samples": stats.count,
            },
        )
        return CalculationOutcome(result, self.learn(domain, context, snapshot))

    def learn(self, domain, context, snapshot) -> ProfileMutation:
        return RateMutation(context.epoch)


# ============================================================
# ENTROPY (M2)
# ============================================================


def entropy_curve(ratio: float) -> float:
    """
    Map an entropy ratio to risk.

    Flat below 0.89, gentle ramp to 0.94, then a steep logistic
    centred on 0.97 that saturates at 1.0.
    """
    if ratio < 0.89:
        return ratio * 0.32
    if ratio < 0.94:
        return 0.2848 + (ratio - 0.89) * 0.5
    return 0.344 + 0.656 / (1.0 + math.exp(-20.0 * (ratio - 0.97)))


class EntropyCalculator(BaseMetricCalculator):
    """Name randomness of the second-level label (DGA detection)."""

    @property
    def metric_id(self) -> MetricId:
        return MetricId.ENTROPY

    async def compute(self, domain, context, snapshot, config) -> CalculationOutcome:
        return CalculationOutcome(self.score(domain))

    def score(self, domain: str) -> MetricResult:
        label = second_level_label(domain)
        cleaned = re.sub(r"[^a-z]", "", label)
        if not cleaned:
            return _error_result(
                MetricId.ENTROPY, 0.5, 0.1, InvalidInput("invalid domain", value=domain or "")
            )

        entropy = shannon_entropy(cleaned)
        max_entropy = math.log2(min(len(cleaned), ALPHABET_SIZE))
        if max_entropy == 0:
            value = 0.5
            ratio = 0.0
        else:
            ratio = entropy / max_entropy
            value = entropy_curve(ratio)

        confidence = min(len(label or cleaned) / ENTROPY_CONFIDENCE_LENGTH, 1.0)
        return MetricResult(
            MetricId.ENTROPY,
            value,
            confidence,
            {
                "label": cleaned,
                "shannon_entropy": round(entropy, 4),
                "max_possible_entropy": round(max_entropy, 4),
                "ratio": round(ratio, 4),
                "unique_chars": len(set(cleaned)),
            },
        )


# ============================================================
# REPUTATION (M3)
# ============================================================


@dataclass
class _Component:
    name: str
    score: float
    confidence: float
    weight: float
    cached: bool = False
    failed: bool = False
    refreshed: Optional[ReputationEntry] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "score": self.score,
            "confidence": self.confidence,
            "weight": self.weight,
            "cached": self.cached,
            "failed": self.failed,
        }


class ReputationCalculator(BaseMetricCalculator):
    """
    Reputation lookup.

    ============================================================
    COMPONENTS
    ============================================================
    - every enabled external source (concurrently, 3 s each)
    - domain age: young domains look riskier
    - TLS validity: probe verdict, cached like a source
    ============================================================

    Cache order per source: profile snapshot, then ReputationCache,
    then the network. Failed lookups contribute 0.5 at confidence 0
    and are never cached.
    """

    def __init__(
        self,
        cache: ReputationCache,
        sources: Optional[Dict[str, ReputationSource]] = None,
        tls_probe: Optional[ReputationSource] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._cache = cache
        self._sources = dict(sources or {})
        self._tls_probe = tls_probe
        self._clock = clock or SystemClock()

    @property
    def metric_id(self) -> MetricId:
        return MetricId.REPUTATION

    def register_source(self, source: ReputationSource) -> None:
        self._sources[source.name] = source

    async def compute(self, domain, context, snapshot, config) -> CalculationOutcome:
        group = config.groups.reputation
        now = self._clock.timestamp()

        lookups = [
            self._lookup(domain, s.name, s.weight, snapshot, group, now, self._source_score)
            for s in group.external_sources
        ]
        if self._tls_enabled(group) and self._tls_probe is not None:
            lookups.append(
                self._lookup(
                    domain,
                    self._tls_probe.name,
                    group.tls_weight,
                    snapshot,
                    group,
                    now,
                    lambda verdict: group.invalid_tls_score if verdict.malicious else 0.0,
                    source=self._tls_probe,
                )
            )

        components: List[_Component] = list(await asyncio.gather(*lookups))

        age_days = max(0, int((context.epoch - snapshot.first_seen) // 86400))
        components.append(
            _Component(
                name="Domain Age",
                score=group.domain_age_score if age_days < group.min_domain_age_days else 0.0,
                confidence=1.0 if age_days > 0 else 0.1,
                weight=group.domain_age_weight,
            )
        )

        weighted_sum = sum(c.score * c.weight for c in components)
        total_weight = sum(c.weight for c in components)
        value = weighted_sum / total_weight if total_weight > 0 else 0.5
        confidence = sum(c.confidence for c in components) / len(components)

        tls = next((c for c in components if self._tls_probe and c.name == self._tls_probe.name), None)
        refreshed = tuple(c.refreshed for c in components if c.refreshed is not None)

        result = MetricResult(
            MetricId.REPUTATION,
            value,
            confidence,
            {
                "sources": [c.to_dict() for c in components],
                "domain_age_days": age_days,
                "certificate_valid": None if tls is None or tls.failed else tls.score == 0.0,
                "weighted_sum": round(weighted_sum, 4),
                "total_weight": round(total_weight, 4),
            },
        )
        return CalculationOutcome(result, ReputationMutation(refreshed))

    # --------------------------------------------------------
    # LOOKUPS
    # --------------------------------------------------------

    @staticmethod
    def _tls_enabled(group: ReputationGroupConfig) -> bool:
        for source in group.sources:
            if source.name == CERT_VALIDITY_SOURCE:
                return source.enabled
        return True

    @staticmethod
    def _source_score(verdict: SourceVerdict) -> float:
        return 1.0 if verdict.malicious else 0.0

    async def _lookup(
        self,
        domain: str,
        name: str,
        weight: float,
        snapshot: DomainProfile,
        group: ReputationGroupConfig,
        now: float,
        scorer: Callable[[SourceVerdict], float],
        source: Optional[ReputationSource] = None,
    ) -> _Component:
        known = snapshot.get_reputation(name)
        if known is not None and now - known.timestamp < group.cache_ttl_seconds:
            return _Component(name, known.score, known.confidence, weight, cached=True)

        source = source or self._sources.get(name)
        try:
            if source is None:
                raise ExternalLookupFailure("No source registered", source=name, domain=domain)

            async def fetch() -> CachedVerdict:
                return await self._fetch(source, domain, group.lookup_timeout_seconds, scorer)

            verdict = await self._cache.lookup(domain, name, fetch, now, group.cache_ttl_hours)
        except ExternalLookupFailure as e:
            logger.warning(f"Reputation lookup failed: source={name} domain={domain}: {e.message}")
            return _Component(name, 0.5, 0.0, weight, failed=True)

        entry = ReputationEntry(name, verdict.score, verdict.confidence, verdict.cached_at)
        cached = verdict.cached_at < now
        return _Component(name, verdict.score, verdict.confidence, weight, cached=cached, refreshed=entry)

    async def _fetch(
        self,
        source: ReputationSource,
        domain: str,
        timeout: float,
        scorer: Callable[[SourceVerdict], float],
    ) -> CachedVerdict:
        try:
            verdict = await asyncio.wait_for(source.check(domain), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ExternalLookupFailure(
                f"Timed out after {timeout}s", source=source.name, domain=domain, cause=e
            ) from e
        except ExternalLookupFailure:
            raise
        except Exception as e:
            raise ExternalLookupFailure(
                f"Unexpected error: {e}", source=source.name, domain=domain, cause=e
            ) from e

        confidence = verdict.confidence if verdict.confidence is not None else DEFAULT_SOURCE_CONFIDENCE
        return CachedVerdict(
            score=scorer(verdict),
            confidence=clamp(confidence),
            cached_at=self._clock.timestamp(),
        )


# ============================================================
# BEHAVIOR (M4)
# ============================================================


def temporal_deviation(index: int, distribution: List[int]) -> float:
    """
    How unusual bucket ``index`` is within ``distribution``.

    Buckets near the peak score close to 0, never-seen buckets 0.9;
    an empty histogram is neutral-ish 0.4.
    """
    total = sum(distribution) if distribution else 0
    if total == 0:
        return 0.4

    count = distribution[index] if 0 <= index < len(distribution) else 0
    if count == 0:
        return 0.9

    probability = count / total
    peak = max(distribution)
    relative = count / peak if peak > 0 else 0.0

    if relative >= 0.95:
        deviation = 0.0001
    elif relative >= 0.8:
        deviation = 0.005 + (0.95 - relative) * 0.02
    elif relative >= 0.6:
        deviation = 0.02 + (0.8 - relative) * 0.08
    elif relative >= 0.4:
        deviation = 0.1 + (0.6 - relative) * 0.2
    elif probability > 0.15:
        deviation = 0.3 + (1 - probability / 0.15) * 0.4
    elif probability > 0.05:
        deviation = 0.6 + (1 - probability / 0.05) * 0.2
    else:
        deviation = 0.8 + (1 - probability) * 0.2

    return round(clamp(deviation), 4)


def hour_and_day(context: RequestContext) -> Tuple[int, int]:
    """UTC hour and weekday (0 = Sunday) of the event."""
    ts = to_utc(context.timestamp)
    return ts.hour, ts.isoweekday() % 7


class BehaviorCalculator(BaseMetricCalculator):
    """
    Behavioral deviation from the domain's own history.

    Requires ``min_history_requests`` observations before it scores;
    until then it returns neutral 0.5 at confidence 0.1 but still
    learns.
    """

    @property
    def metric_id(self) -> MetricId:
        return MetricId.BEHAVIOR

    async def compute(self, domain, context, snapshot, config) -> CalculationOutcome:
        required = config.groups.behavior.min_history_requests
        mutation = self.learn(domain, context, snapshot)

        if snapshot.request_count < required:
            thin = InsufficientHistory(snapshot.request_count, required)
            return CalculationOutcome(_error_result(MetricId.BEHAVIOR, 0.5, 0.1, thin), mutation)

        hour, day = hour_and_day(context)
        time_dev = temporal_deviation(hour, snapshot.access_hours)
        day_dev = temporal_deviation(day, snapshot.day_frequencies)

        mismatch = False
        if context.referrer:
            mismatch = not hosts_related(context.referrer, snapshot.most_common_referrer())

        path_score = 0.8 if snapshot.direct_access_to_sensitive and is_sensitive_path(context.url) else 0.0

        stats = snapshot.inter_arrival_stats
        interval = mutation.inter_arrival
        z = z_score(interval, stats.mean, stats.variance) if interval is not None else 0.0

        raw = (
            time_dev * 0.30
            + day_dev * 0.25
            + (0.8 if mismatch else 0.0) * 0.20
            + path_score * 0.15
            + max(0.0, z / 5.0) * 0.10
        )
        common = time_dev < 0.01 and day_dev < 0.01 and not mismatch and path_score == 0 and abs(z) <= 1
        if common:
            raw -= 0.15

        value = sigmoid(raw * 8.0)
        confidence = min(snapshot.request_count / CONFIDENCE_SATURATION, 1.0)

        result = MetricResult(
            MetricId.BEHAVIOR,
            value,
            confidence,
            {
                "time_of_day_deviation": round(time_dev, 3),
                "day_of_week_deviation": round(day_dev, 3),
                "referrer_mismatch": mismatch,
                "navigation_path_score": path_score,
                "z_score": round(z, 3),
                "common_pattern": common,
            },
        )
        return CalculationOutcome(result, mutation)

    def learn(self, domain, context, snapshot) -> BehaviorMutation:
        hour, day = hour_and_day(context)
        interval = None
        if snapshot.request_count > 0:
            interval = max(0.0, context.epoch - snapshot.last_seen)
        return BehaviorMutation(
            hour=hour,
            day=day,
            referrer=context.referrer or None,
            inter_arrival=interval,
            sensitive_main_frame=context.is_main_frame and is_sensitive_path(context.url),
        )


__all__ = [
    "CalculationOutcome",
    "BaseMetricCalculator",
    "RateCalculator",
    "EntropyCalculator",
    "ReputationCalculator",
    "BehaviorCalculator",
    "entropy_curve",
    "temporal_deviation",
    "hour_and_day",
]
