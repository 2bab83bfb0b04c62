"""
Domain Risk Engine - Package.

============================================================
PURPOSE
============================================================
Scores every observed browser request for its registrable domain
and returns a risk score in [0, 1], a confidence, and a per-metric
breakdown. Each domain keeps a persistent statistical profile that
the engine learns from on every event.

============================================================
FOUR METRICS
============================================================
1. RATE: request-rate anomaly against the domain's own history
2. ENTROPY: randomness of the domain name (DGA detection)
3. REPUTATION: external feeds, domain age, TLS validity
4. BEHAVIOR: time, day, referrer and navigation deviation

============================================================
SCORING
============================================================
Weighted average of enabled metrics (0.15 / 0.25 / 0.40 / 0.20),
scaled by sensitivity (low 0.8, balanced 1.0, high 1.15,
paranoid 1.3). Confidence is the harmonic mean of metric
confidences.

Classification (defaults):
- CRITICAL: >= 0.80
- HIGH: >= 0.60
- MEDIUM: >= 0.40
- LOW: below

============================================================
USAGE
============================================================
    from domain_risk import build_engine, RequestContext

    engine = build_engine(in_memory=True)
    assessment = await engine.evaluate(
        RequestContext(url="https://xk7qpz9w.com/login", referrer="https://mail.example.com/")
    )

    print(assessment.to_dict())

============================================================
"""

from .aggregator import RiskAggregator
from .alerting import AlertSender, LoggingAlertSender, RiskAlert, RiskAlertingService
from .calculators import (
    BaseMetricCalculator,
    BehaviorCalculator,
    CalculationOutcome,
    EntropyCalculator,
    RateCalculator,
    ReputationCalculator,
)
from .clock import ClockProtocol, MockClock, SystemClock
from .config import (
    EngineConfig,
    get_default_config,
    load_config,
    load_config_from_env,
)
from .engine import DomainRiskEngine, build_engine
from .exceptions import (
    ConfigurationDisabled,
    ConfigurationError,
    DomainRiskError,
    ExternalLookupFailure,
    InsufficientHistory,
    InvalidInput,
    StorageFailure,
)
from .profile import DomainProfile, SlidingWindow, WelfordAccumulator, migrate_profile_record
from .storage import InMemoryKeyValueStore, KeyValueStore, ProfileStore, SqlKeyValueStore
from .types import (
    AggregateResult,
    Contribution,
    MetricId,
    MetricResult,
    RequestContext,
    ResourceType,
    RiskAssessment,
    RiskLevel,
    Sensitivity,
)


__version__ = "1.0.0"

__all__ = [
    # Engine
    "DomainRiskEngine",
    "build_engine",
    "RiskAggregator",
    # Calculators
    "BaseMetricCalculator",
    "CalculationOutcome",
    "RateCalculator",
    "EntropyCalculator",
    "ReputationCalculator",
    "BehaviorCalculator",
    # Types
    "MetricId",
    "Sensitivity",
    "RiskLevel",
    "ResourceType",
    "RequestContext",
    "MetricResult",
    "Contribution",
    "AggregateResult",
    "RiskAssessment",
    # Profile / storage
    "DomainProfile",
    "SlidingWindow",
    "WelfordAccumulator",
    "migrate_profile_record",
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "SqlKeyValueStore",
    "ProfileStore",
    # Config
    "EngineConfig",
    "get_default_config",
    "load_config",
    "load_config_from_env",
    # Alerting
    "RiskAlert",
    "AlertSender",
    "LoggingAlertSender",
    "RiskAlertingService",
    # Clock
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    # Exceptions
    "DomainRiskError",
    "ConfigurationError",
    "ConfigurationDisabled",
    "InvalidInput",
    "InsufficientHistory",
    "ExternalLookupFailure",
    "StorageFailure",
]
