"""
Domain Risk Engine - Configuration.

============================================================
PURPOSE
============================================================
Configuration dataclasses, defaults and loaders for the engine.

The engine reads one immutable EngineConfig snapshot at the start
of every evaluation, so a reload never changes weights halfway
through an event.

============================================================
DESIGN PRINCIPLES
============================================================
- Every knob has a sane default (runs without a config file)
- Immutable configurations
- YAML for files, environment for secrets
- Invalid values fail loudly with ConfigurationError

============================================================
DEFAULT WEIGHTS
============================================================
rate 0.15 / entropy 0.25 / reputation 0.40 / behavior 0.20

============================================================
"""

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError
from .types import MetricId, Sensitivity


logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "DOMAIN_RISK_CONFIG"

# Source names with built-in meaning inside the reputation calculator
CERT_VALIDITY_SOURCE = "CERT Validity"
DOMAIN_AGE_SOURCE = "Domain Age"
TLS_CERTIFICATE_SOURCE = "TLS Certificate"
RESERVED_SOURCE_NAMES = frozenset({CERT_VALIDITY_SOURCE, DOMAIN_AGE_SOURCE, TLS_CERTIFICATE_SOURCE})


# ============================================================
# METRIC GROUP CONFIGURATION
# ============================================================


@dataclass(frozen=True)
class RateGroupConfig:
    """Request-rate anomaly (M1)."""

    enabled: bool = True
    weight: float = 0.15

    def to_dict(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "weight": self.weight}


@dataclass(frozen=True)
class EntropyGroupConfig:
    """Name entropy (M2)."""

    enabled: bool = True
    weight: float = 0.25

    def to_dict(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "weight": self.weight}


@dataclass(frozen=True)
class ReputationSourceConfig:
    """One external reputation feed and its weight in the M3 average."""

    name: str
    enabled: bool = True
    weight: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "enabled": self.enabled, "weight": self.weight}


def _default_sources() -> Tuple[ReputationSourceConfig, ...]:
    return (
        ReputationSourceConfig("Google Safe Browsing", True, 0.4),
        ReputationSourceConfig("PhishTank", True, 0.3),
        ReputationSourceConfig("OpenPhish", True, 0.2),
        ReputationSourceConfig(CERT_VALIDITY_SOURCE, True, 0.1),
    )


@dataclass(frozen=True)
class ReputationGroupConfig:
    """
    Reputation lookup (M3).

    ============================================================
    COMPONENTS
    ============================================================
    - External sources: weighted by ReputationSourceConfig.weight
    - Domain age: 0.7 when younger than min_domain_age_days, weight 0.15
    - TLS validity: 0.9 when the probe fails, weight 0.1

    Cached verdicts younger than cache_ttl_hours are reused without
    another outbound request.
    ============================================================
    """

    enabled: bool = True
    weight: float = 0.40
    cache_ttl_hours: float = 24.0
    sources: Tuple[ReputationSourceConfig, ...] = field(default_factory=_default_sources)

    lookup_timeout_seconds: float = 3.0      # Per-source outbound timeout
    min_domain_age_days: int = 30            # Younger domains are penalized
    domain_age_score: float = 0.7
    domain_age_weight: float = 0.15
    invalid_tls_score: float = 0.9
    tls_weight: float = 0.1

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_hours * 3600.0

    @property
    def external_sources(self) -> Tuple[ReputationSourceConfig, ...]:
        """Enabled sources that are actual feeds (reserved names excluded)."""
        return tuple(
            s for s in self.sources
            if s.enabled and s.name not in RESERVED_SOURCE_NAMES
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "weight": self.weight,
            "cache_ttl_hours": self.cache_ttl_hours,
            "sources": [s.to_dict() for s in self.sources],
            "lookup_timeout_seconds": self.lookup_timeout_seconds,
            "min_domain_age_days": self.min_domain_age_days,
        }


@dataclass(frozen=True)
class BehaviorGroupConfig:
    """Behavioral deviation (M4)."""

    enabled: bool = True
    weight: float = 0.20
    min_history_requests: int = 5            # Below this: neutral 0.5 / 0.1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "weight": self.weight,
            "min_history_requests": self.min_history_requests,
        }


@dataclass(frozen=True)
class GroupsConfig:
    """All four metric groups."""

    rate: RateGroupConfig = field(default_factory=RateGroupConfig)
    entropy: EntropyGroupConfig = field(default_factory=EntropyGroupConfig)
    reputation: ReputationGroupConfig = field(default_factory=ReputationGroupConfig)
    behavior: BehaviorGroupConfig = field(default_factory=BehaviorGroupConfig)

    def get(self, metric_id: MetricId):
        return getattr(self, metric_id.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rate": self.rate.to_dict(),
            "entropy": self.entropy.to_dict(),
            "reputation": self.reputation.to_dict(),
            "behavior": self.behavior.to_dict(),
        }


# ============================================================
# GLOBAL CONFIGURATION
# ============================================================


@dataclass(frozen=True)
class ThresholdsConfig:
    """Score cut points used to classify the final risk level."""

    critical: float = 0.80
    high: float = 0.60
    medium: float = 0.40

    def to_dict(self) -> Dict[str, Any]:
        return {"critical": self.critical, "high": self.high, "medium": self.medium}


@dataclass(frozen=True)
class StorageConfig:
    """Profile persistence limits."""

    enabled: bool = True
    max_profiles: int = 10_000
    profile_ttl_days: float = 90.0
    prune_fraction: float = 0.2              # Share removed when over capacity
    capacity_check_interval: int = 100       # Writes between capacity checks

    @property
    def profile_ttl_seconds(self) -> float:
        return self.profile_ttl_days * 86400.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "max_profiles": self.max_profiles,
            "profile_ttl_days": self.profile_ttl_days,
            "prune_fraction": self.prune_fraction,
            "capacity_check_interval": self.capacity_check_interval,
        }


@dataclass(frozen=True)
class AlertingConfig:
    """Critical-risk alert hand-off."""

    enabled: bool = True
    min_confidence: float = 0.7
    throttle_seconds: float = 300.0          # One alert per domain per 5 minutes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "min_confidence": self.min_confidence,
            "throttle_seconds": self.throttle_seconds,
        }


@dataclass(frozen=True)
class ApiKeysConfig:
    """Secrets for reputation feeds. Never serialized."""

    google_safe_browsing: Optional[str] = None
    phishtank: Optional[str] = None


@dataclass(frozen=True)
class EngineConfig:
    """
    Master configuration for the Domain Risk Engine.

    Aggregates group configs, thresholds and engine settings.
    """

    enabled: bool = True
    sensitivity: Sensitivity = Sensitivity.BALANCED
    thresholds: ThresholdsConfig = field(default_factory=ThresholdsConfig)
    groups: GroupsConfig = field(default_factory=GroupsConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    alerting: AlertingConfig = field(default_factory=AlertingConfig)
    api_keys: ApiKeysConfig = field(default_factory=ApiKeysConfig)

    engine_version: str = "1.0.0"

    def validate(self) -> "EngineConfig":
        """
        Check value ranges.

        Returns:
            self, so calls can be chained

        Raises:
            ConfigurationError: On the first invalid value
        """
        t = self.thresholds
        for name, value in (("critical", t.critical), ("high", t.high), ("medium", t.medium)):
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(
                    f"Threshold {name} must be within [0, 1]",
                    config_key=f"thresholds.{name}",
                    actual_value=value,
                )
        if not t.medium <= t.high <= t.critical:
            raise ConfigurationError(
                "Thresholds must satisfy medium <= high <= critical",
                config_key="thresholds",
                actual_value=t.to_dict(),
            )

        for metric in MetricId.all_metrics():
            group = self.groups.get(metric)
            if group.weight < 0:
                raise ConfigurationError(
                    f"Weight for {metric.value} must not be negative",
                    config_key=f"groups.{metric.value}.weight",
                    actual_value=group.weight,
                )

        reputation = self.groups.reputation
        for source in reputation.sources:
            if source.weight < 0:
                raise ConfigurationError(
                    f"Weight for source {source.name} must not be negative",
                    config_key="groups.reputation.sources",
                    actual_value=source.weight,
                )
        if reputation.cache_ttl_hours < 0:
            raise ConfigurationError(
                "cache_ttl_hours must not be negative",
                config_key="groups.reputation.cache_ttl_hours",
                actual_value=reputation.cache_ttl_hours,
            )
        if reputation.lookup_timeout_seconds <= 0:
            raise ConfigurationError(
                "lookup_timeout_seconds must be positive",
                config_key="groups.reputation.lookup_timeout_seconds",
                actual_value=reputation.lookup_timeout_seconds,
            )
        if self.groups.behavior.min_history_requests < 0:
            raise ConfigurationError(
                "min_history_requests must not be negative",
                config_key="groups.behavior.min_history_requests",
                actual_value=self.groups.behavior.min_history_requests,
            )

        if self.storage.max_profiles <= 0:
            raise ConfigurationError(
                "max_profiles must be positive",
                config_key="storage.max_profiles",
                actual_value=self.storage.max_profiles,
            )
        if self.storage.profile_ttl_days <= 0:
            raise ConfigurationError(
                "profile_ttl_days must be positive",
                config_key="storage.profile_ttl_days",
                actual_value=self.storage.profile_ttl_days,
            )
        if not 0.0 < self.storage.prune_fraction <= 1.0:
            raise ConfigurationError(
                "prune_fraction must be within (0, 1]",
                config_key="storage.prune_fraction",
                actual_value=self.storage.prune_fraction,
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "sensitivity": self.sensitivity.value,
            "thresholds": self.thresholds.to_dict(),
            "groups": self.groups.to_dict(),
            "storage": self.storage.to_dict(),
            "alerting": self.alerting.to_dict(),
            "engine_version": self.engine_version,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EngineConfig":
        """
        Build a configuration from a (partial) mapping.

        Missing keys keep their defaults.

        Raises:
            ConfigurationError: On unknown sensitivity or bad shapes
        """
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration root must be a mapping", actual_value=data)

        base = cls()
        try:
            sensitivity = Sensitivity(data.get("sensitivity", base.sensitivity.value))
        except ValueError as e:
            raise ConfigurationError(
                "Unknown sensitivity",
                config_key="sensitivity",
                actual_value=data.get("sensitivity"),
                cause=e,
            ) from e

        groups_data = data.get("groups") or {}
        reputation_data = dict(groups_data.get("reputation") or {})
        sources_data = reputation_data.pop("sources", None)
        if sources_data is not None:
            try:
                sources = tuple(ReputationSourceConfig(**s) for s in sources_data)
            except TypeError as e:
                raise ConfigurationError(
                    "Invalid reputation source entry",
                    config_key="groups.reputation.sources",
                    actual_value=sources_data,
                    cause=e,
                ) from e
        else:
            sources = base.groups.reputation.sources

        try:
            config = cls(
                enabled=bool(data.get("enabled", base.enabled)),
                sensitivity=sensitivity,
                thresholds=replace(base.thresholds, **(data.get("thresholds") or {})),
                groups=GroupsConfig(
                    rate=replace(base.groups.rate, **(groups_data.get("rate") or {})),
                    entropy=replace(base.groups.entropy, **(groups_data.get("entropy") or {})),
                    reputation=replace(base.groups.reputation, sources=sources, **reputation_data),
                    behavior=replace(base.groups.behavior, **(groups_data.get("behavior") or {})),
                ),
                storage=replace(base.storage, **(data.get("storage") or {})),
                alerting=replace(base.alerting, **(data.get("alerting") or {})),
                api_keys=replace(base.api_keys, **(data.get("api_keys") or {})),
            )
        except TypeError as e:
            raise ConfigurationError("Unknown configuration key", cause=e) from e

        return config.validate()


# ============================================================
# LOADERS
# ============================================================


def get_default_config() -> EngineConfig:
    """Return the default engine configuration."""
    return EngineConfig()


def load_config(path: Union[str, Path]) -> EngineConfig:
    """
    Load configuration from a YAML file, merged over defaults.

    Args:
        path: YAML file path

    Raises:
        ConfigurationError: If the file cannot be read or is invalid
    """
    config_path = Path(path)
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(
            f"Failed to load configuration from {config_path}",
            config_key=str(config_path),
            cause=e,
        ) from e

    config = EngineConfig.from_dict(data)
    logger.info(f"Loaded domain risk configuration from {config_path}")
    return config


def load_config_from_env() -> EngineConfig:
    """
    Load configuration using environment variables.

    - DOMAIN_RISK_CONFIG: optional YAML path
    - GOOGLE_SAFE_BROWSING_API_KEY / PHISHTANK_API_KEY: feed secrets
    """
    load_dotenv()

    path = os.getenv(CONFIG_PATH_ENV)
    config = load_config(path) if path else get_default_config()

    api_keys = ApiKeysConfig(
        google_safe_browsing=os.getenv("GOOGLE_SAFE_BROWSING_API_KEY") or config.api_keys.google_safe_browsing,
        phishtank=os.getenv("PHISHTANK_API_KEY") or config.api_keys.phishtank,
    )
    if not api_keys.google_safe_browsing:
        logger.warning("GOOGLE_SAFE_BROWSING_API_KEY not set, Safe Browsing lookups will fail over to neutral")
    return replace(config, api_keys=api_keys)


__all__ = [
    "CERT_VALIDITY_SOURCE",
    "DOMAIN_AGE_SOURCE",
    "TLS_CERTIFICATE_SOURCE",
    "RateGroupConfig",
    "EntropyGroupConfig",
    "ReputationSourceConfig",
    "ReputationGroupConfig",
    "BehaviorGroupConfig",
    "GroupsConfig",
    "ThresholdsConfig",
    "StorageConfig",
    "AlertingConfig",
    "ApiKeysConfig",
    "EngineConfig",
    "get_default_config",
    "load_config",
    "load_config_from_env",
]
