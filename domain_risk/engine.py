"""
Domain Risk Engine - Main Orchestrator.

============================================================
PURPOSE
============================================================
The DomainRiskEngine is the main entry point for scoring a
request.

It orchestrates:
1. Configuration snapshot and domain normalization
2. Profile load under a per-domain lock
3. The four metric calculators, run concurrently on a snapshot
4. Mutation merge, aggregation and risk history
5. Critical-risk alerting
6. One persisted write per event

============================================================
CONCURRENCY
============================================================
Events for the same domain are serialized by an asyncio.Lock
held from load to write, so no update is lost. Events for
different domains run fully in parallel. Cancelling an
evaluation before its write discards the event.

============================================================
USAGE
============================================================
    from domain_risk import build_engine, RequestContext

    engine = build_engine()
    assessment = await engine.evaluate(RequestContext(url="https://example.com/login"))

    print(f"{assessment.domain}: {assessment.risk_level.value} ({assessment.risk_score:.2f})")

============================================================
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import AsyncIterator, Dict, Iterable, List, Optional

from .aggregator import RiskAggregator
from .alerting import RiskAlertingService
from .calculators import (
    BaseMetricCalculator,
    BehaviorCalculator,
    CalculationOutcome,
    EntropyCalculator,
    RateCalculator,
    ReputationCalculator,
)
from .clock import ClockProtocol, SystemClock
from .config import EngineConfig, get_default_config
from .database import (
    create_all_tables,
    create_database_engine,
    create_session_factory,
    verify_database_connection,
)
from .domains import normalize_domain
from .exceptions import StorageFailure
from .mutations import NoMutation
from .profile import DomainProfile
from .reputation.cache import ReputationCache
from .reputation.sources import ReputationSource, TlsProbe, build_default_sources
from .storage import InMemoryKeyValueStore, ProfileStore, SqlKeyValueStore
from .types import MetricId, MetricResult, RequestContext, RiskAssessment


logger = logging.getLogger(__name__)


class DomainRiskEngine:
    """
    Main orchestrator for the Domain Risk Engine.

    ============================================================
    RESPONSIBILITIES
    ============================================================
    1. Serialize events per domain
    2. Run calculators and merge what they learned
    3. Aggregate, classify, alert
    4. Persist the profile once per event
    ============================================================
    """

    def __init__(
        self,
        store: ProfileStore,
        config: Optional[EngineConfig] = None,
        sources: Optional[Dict[str, ReputationSource]] = None,
        tls_probe: Optional[ReputationSource] = None,
        alerting: Optional[RiskAlertingService] = None,
        calculators: Optional[Dict[MetricId, BaseMetricCalculator]] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Initialize the engine.

        Args:
            store: Profile store
            config: Configuration (defaults if not provided)
            sources: Reputation sources keyed by configured name
            tls_probe: Transport validity probe
            alerting: Alerting service (logging sender by default)
            calculators: Per-metric overrides of the built-in calculators
            clock: Time source
        """
        self._config = (config or get_default_config()).validate()
        self._store = store
        self._clock = clock or SystemClock()
        self._aggregator = RiskAggregator()
        self._alerting = alerting or RiskAlertingService(self._config.alerting)

        self.reputation_cache = ReputationCache(store.kv)
        self._sources = dict(sources or {})
        self._tls_probe = tls_probe

        self._reputation = ReputationCalculator(
            self.reputation_cache,
            sources=self._sources,
            tls_probe=tls_probe,
            clock=self._clock,
        )
        defaults: Dict[MetricId, BaseMetricCalculator] = {
            MetricId.RATE: RateCalculator(),
            MetricId.ENTROPY: EntropyCalculator(),
            MetricId.REPUTATION: self._reputation,
            MetricId.BEHAVIOR: BehaviorCalculator(),
        }
        defaults.update(calculators or {})
        # merge order is fixed: rate, entropy, reputation, behavior
        self._calculators: List[BaseMetricCalculator] = [defaults[m] for m in MetricId.all_metrics()]

        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    # --------------------------------------------------------
    # CONFIGURATION
    # --------------------------------------------------------

    @property
    def config(self) -> EngineConfig:
        return self._config

    def update_config(self, config: EngineConfig) -> None:
        """Swap in a new configuration; running evaluations keep their snapshot."""
        self._config = config.validate()
        self._alerting.update_config(self._config.alerting)
        logger.info(f"Engine configuration updated (sensitivity={config.sensitivity.value})")

    @property
    def store(self) -> ProfileStore:
        return self._store

    def register_source(self, source: ReputationSource) -> None:
        """Add or replace a reputation source, keyed by its name."""
        self._sources[source.name] = source
        self._reputation.register_source(source)

    # --------------------------------------------------------
    # EVALUATION
    # --------------------------------------------------------

    async def evaluate(self, context: RequestContext) -> Optional[RiskAssessment]:
        """
        Score one request.

        Args:
            context: Inbound request

        Returns:
            RiskAssessment, or None when the engine is disabled or the
            URL has no usable domain
        """
        config = self._config
        if not config.enabled:
            return None

        domain = normalize_domain(context.url)
        if not domain or domain == "localhost":
            logger.debug(f"Dropping request without a scorable domain: {context.url[:120]!r}")
            return None

        async with self._domain_lock(domain):
            profile = await self._load_profile(domain, context)
            snapshot = profile.snapshot()

            outcomes = await asyncio.gather(
                *(self._run_calculator(c, domain, context, snapshot, config) for c in self._calculators)
            )

            for outcome in outcomes:
                outcome.mutation.apply(profile)
            logger.debug(f"Merged {len(outcomes)} mutations into {domain}")

            results = [o.result for o in outcomes]
            aggregate = self._aggregator.aggregate(results, config)
            assessment = RiskAssessment(
                domain=domain,
                risk_score=aggregate.risk_score,
                confidence=aggregate.confidence,
                risk_level=self._aggregator.classify(aggregate.risk_score, config.thresholds),
                contributions=list(aggregate.contributions),
                metrics=results,
                assessed_at=self._clock.now(),
            )
            profile.record_risk(context.epoch, assessment.risk_score)

            if assessment.is_critical:
                logger.warning(
                    f"Critical risk for {domain}: score={assessment.risk_score:.3f} "
                    f"confidence={assessment.confidence:.3f}"
                )
            alerted_at = await self._alerting.process(assessment, profile, self._clock.timestamp())
            if alerted_at is not None:
                profile.last_alerted = alerted_at
                assessment = replace(assessment, alerted=True)

            persisted = await self._persist(domain, profile)
            if not persisted:
                assessment = replace(assessment, persisted=False)

        return assessment

    async def evaluate_many(self, contexts: Iterable[RequestContext]) -> List[Optional[RiskAssessment]]:
        """Evaluate independent requests concurrently, preserving order."""
        return list(await asyncio.gather(*(self.evaluate(c) for c in contexts)))

    # --------------------------------------------------------
    # MAINTENANCE
    # --------------------------------------------------------

    async def get_profile(self, domain: str) -> Optional[DomainProfile]:
        return await self._store.get(normalize_domain(domain))

    async def evict_expired(self) -> int:
        return await self._store.evict_expired()

    async def close(self) -> None:
        """Close outbound HTTP sessions owned by the sources."""
        sources = list(self._sources.values())
        if self._tls_probe is not None:
            sources.append(self._tls_probe)
        for source in sources:
            await source.close()

    # --------------------------------------------------------
    # INTERNALS
    # --------------------------------------------------------

    @asynccontextmanager
    async def _domain_lock(self, domain: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(domain, asyncio.Lock())
        self._lock_users[domain] = self._lock_users.get(domain, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[domain] -= 1
            if self._lock_users[domain] == 0:
                del self._lock_users[domain]
                self._locks.pop(domain, None)

    @property
    def active_domains(self) -> int:
        """Domains with an evaluation running or waiting."""
        return len(self._locks)

    async def _load_profile(self, domain: str, context: RequestContext) -> DomainProfile:
        try:
            profile = await self._store.get(domain)
        except StorageFailure as e:
            logger.warning(f"Profile read failed for {domain}, starting fresh: {e.to_log_format()}")
            profile = None
        return profile or self._store.create(domain, context.epoch)

    async def _run_calculator(
        self,
        calculator: BaseMetricCalculator,
        domain: str,
        context: RequestContext,
        snapshot: DomainProfile,
        config: EngineConfig,
    ) -> CalculationOutcome:
        try:
            return await calculator.calculate(domain, context, snapshot, config)
        except Exception as e:
            logger.error(f"{calculator.metric_id.value} calculator failed for {domain}: {e}")
            return CalculationOutcome(
                MetricResult.neutral(calculator.metric_id, 0.0, "calculation failed", error=str(e)),
                NoMutation(),
            )

    async def _persist(self, domain: str, profile: DomainProfile) -> bool:
        try:
            return await self._store.put(domain, profile)
        except StorageFailure as e:
            logger.error(f"Profile write failed for {domain}: {e.to_log_format()}")
            return False


# ============================================================
# FACTORY FUNCTIONS
# ============================================================


def build_engine(
    config: Optional[EngineConfig] = None,
    database_url: Optional[str] = None,
    in_memory: bool = False,
    clock: Optional[ClockProtocol] = None,
) -> DomainRiskEngine:
    """
    Create an engine wired to the built-in reputation feeds.

    Args:
        config: Engine configuration (defaults if not provided)
        database_url: SQLAlchemy URL (environment default if not provided)
        in_memory: Use a process-local store instead of a database
        clock: Time source

    Returns:
        Configured DomainRiskEngine
    """
    config = config or get_default_config()
    clock = clock or SystemClock()

    if in_memory:
        kv = InMemoryKeyValueStore()
    else:
        db_engine = create_database_engine(database_url)
        create_all_tables(db_engine)
        verify_database_connection(db_engine)
        kv = SqlKeyValueStore(create_session_factory(db_engine))

    timeout = config.groups.reputation.lookup_timeout_seconds
    return DomainRiskEngine(
        store=ProfileStore(kv, config.storage, clock),
        config=config,
        sources=build_default_sources(config.api_keys, timeout=timeout, clock=clock),
        tls_probe=TlsProbe(timeout=timeout),
        clock=clock,
    )


__all__ = ["DomainRiskEngine", "build_engine"]
