"""
Domain Risk Engine - Type Definitions.

============================================================
PURPOSE
============================================================
Data contracts for the Domain Risk Scoring Engine.

This module defines the enums and dataclasses exchanged between
the host, the calculators, the aggregator and the engine.

============================================================
DESIGN PRINCIPLES
============================================================
- Immutable where possible
- Enums for discrete values
- Values and confidences always clamped to [0, 1]
- Clear separation between input and output types

============================================================
METRICS
============================================================
1. RATE (M1) - Request-rate anomaly
2. ENTROPY (M2) - Name randomness (DGA detection)
3. REPUTATION (M3) - External verdicts + domain age + TLS
4. BEHAVIOR (M4) - Deviation from the domain's own history

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# ============================================================
# ENUMS
# ============================================================


class MetricId(str, Enum):
    """
    The four metric groups scored by the engine.

    The value doubles as the configuration group name.
    """

    RATE = "rate"
    ENTROPY = "entropy"
    REPUTATION = "reputation"
    BEHAVIOR = "behavior"

    @classmethod
    def all_metrics(cls) -> List["MetricId"]:
        """Return all metrics in evaluation order."""
        return [cls.RATE, cls.ENTROPY, cls.REPUTATION, cls.BEHAVIOR]

    @classmethod
    def from_alias(cls, value: str) -> Optional["MetricId"]:
        """
        Resolve a metric id or its legacy alias (M1..M4).

        Returns:
            The MetricId, or None when unknown
        """
        if isinstance(value, MetricId):
            return value
        normalized = str(value).strip().lower()
        aliases = {
            "m1": cls.RATE,
            "m2": cls.ENTROPY,
            "m3": cls.REPUTATION,
            "m4": cls.BEHAVIOR,
        }
        if normalized in aliases:
            return aliases[normalized]
        for metric in cls:
            if metric.value == normalized:
                return metric
        return None


class Sensitivity(str, Enum):
    """User-selected sensitivity applied as a final score multiplier."""

    LOW = "low"
    BALANCED = "balanced"
    HIGH = "high"
    PARANOID = "paranoid"

    @property
    def multiplier(self) -> float:
        return {
            "low": 0.8,
            "balanced": 1.0,
            "high": 1.15,
            "paranoid": 1.3,
        }[self.value]


class RiskLevel(str, Enum):
    """
    Risk classification of a final score against configured thresholds.

    Default thresholds:
    - CRITICAL: >= 0.80
    - HIGH: >= 0.60
    - MEDIUM: >= 0.40
    - LOW: below medium
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def from_score(
        cls,
        score: float,
        critical: float = 0.80,
        high: float = 0.60,
        medium: float = 0.40,
    ) -> "RiskLevel":
        if score >= critical:
            return cls.CRITICAL
        elif score >= high:
            return cls.HIGH
        elif score >= medium:
            return cls.MEDIUM
        return cls.LOW


class ResourceType(str, Enum):
    """Kind of request reported by the host's interception layer."""

    MAIN_FRAME = "main_frame"
    SUB_FRAME = "sub_frame"
    SCRIPT = "script"
    XHR = "xhr"
    IMAGE = "image"
    STYLESHEET = "stylesheet"
    FONT = "font"
    MEDIA = "media"
    WEBSOCKET = "websocket"
    OTHER = "other"


def _clamp01(value: float) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0.0
    if v != v:  # NaN
        return 0.0
    return max(0.0, min(1.0, v))


# ============================================================
# INPUT DATA CONTRACTS
# ============================================================


@dataclass(frozen=True)
class RequestContext:
    """
    One inbound browser request, as supplied by the host.

    The engine normalizes ``url`` to a registrable domain before
    any profile lookup.
    """

    url: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    referrer: Optional[str] = None
    user_agent: str = ""
    resource_type: Optional[ResourceType] = None

    @property
    def epoch(self) -> float:
        """Event time as epoch seconds."""
        ts = self.timestamp
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts.timestamp()

    @property
    def is_main_frame(self) -> bool:
        return self.resource_type == ResourceType.MAIN_FRAME


# ============================================================
# OUTPUT DATA CONTRACTS
# ============================================================


@dataclass(frozen=True)
class MetricResult:
    """
    Normalized output of one metric calculator.

    ``value`` and ``confidence`` are clamped to [0, 1] on creation.
    """

    metric_id: MetricId
    value: float
    confidence: float
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", _clamp01(self.value))
        object.__setattr__(self, "confidence", _clamp01(self.confidence))

    @classmethod
    def neutral(cls, metric_id: MetricId, confidence: float, reason: str, **details: Any) -> "MetricResult":
        """Neutral 0.5 result used for invalid input / thin history / failures."""
        return cls(metric_id, 0.5, confidence, {"reason": reason, **details})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.metric_id.value,
            "value": self.value,
            "confidence": self.confidence,
            "details": self.details,
        }


@dataclass(frozen=True)
class Contribution:
    """Per-metric share of the aggregated score."""

    metric_id: MetricId
    value: float
    weight: float
    contribution: float
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.metric_id.value,
            "value": self.value,
            "weight": self.weight,
            "contribution": self.contribution,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class AggregateResult:
    """Output of the RiskAggregator."""

    risk_score: float
    confidence: float
    base_score: float
    total_weight: float
    sensitivity: Sensitivity = Sensitivity.BALANCED
    contributions: List[Contribution] = field(default_factory=list)

    @property
    def enabled_metrics(self) -> List[MetricId]:
        return [c.metric_id for c in self.contributions]


@dataclass(frozen=True)
class RiskAssessment:
    """
    Complete result of evaluating one request for one domain.

    ============================================================
    OUTPUT GUARANTEES
    ============================================================
    - risk_score and confidence always in [0, 1]
    - all four metric results always present
    - contributions only list metrics that entered aggregation
    ============================================================
    """

    domain: str
    risk_score: float
    confidence: float
    risk_level: RiskLevel
    contributions: List[Contribution] = field(default_factory=list)
    metrics: List[MetricResult] = field(default_factory=list)
    assessed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    persisted: bool = True
    alerted: bool = False

    def get_metric(self, metric_id: MetricId) -> Optional[MetricResult]:
        for metric in self.metrics:
            if metric.metric_id == metric_id:
                return metric
        return None

    @property
    def is_critical(self) -> bool:
        return self.risk_level == RiskLevel.CRITICAL

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization to the host."""
        return {
            "domain": self.domain,
            "riskScore": self.risk_score,
            "confidence": self.confidence,
            "riskLevel": self.risk_level.value,
            "contributions": [c.to_dict() for c in self.contributions],
            "metrics": [m.to_dict() for m in self.metrics],
            "assessedAt": self.assessed_at.isoformat(),
            "persisted": self.persisted,
            "alerted": self.alerted,
        }


__all__ = [
    "MetricId",
    "Sensitivity",
    "RiskLevel",
    "ResourceType",
    "RequestContext",
    "MetricResult",
    "Contribution",
    "AggregateResult",
    "RiskAssessment",
]
