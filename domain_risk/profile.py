"""
Domain Risk Engine - Domain Profile.

============================================================
PURPOSE
============================================================
The per-domain statistical record: the single source of truth
for a domain's history.

============================================================
CONTENTS
============================================================
- WelfordAccumulator: online mean / M2
- SlidingWindow: capacity-bounded ring buffer of timestamps
- DomainProfile: the record itself, with JSON (de)serialization
- migrate_profile_record: pure schema upgrade for stored records

============================================================
INVARIANTS
============================================================
- accumulator count == number of updates applied; m2 >= 0
- bounded sequences never exceed their capacity
- last_seen >= first_seen
- histogram entries are non-negative integers

============================================================
SCHEMA VERSIONS
============================================================
1: rate windows and rate stats only
2: adds inter-arrival stats, hour/day histograms, referrers,
   sensitive-access flag, reputation cache, risk history,
   last_alerted

============================================================
"""

import copy
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Optional, Tuple

from .stats import sample_variance, welford_update


CURRENT_SCHEMA_VERSION = 2

WINDOW_CAPACITY = 120
REFERRER_CAPACITY = 50
RISK_HISTORY_CAPACITY = 100

HOURS_IN_DAY = 24
DAYS_IN_WEEK = 7

# Window name -> span in seconds
WINDOW_SPANS: Dict[str, int] = {
    "one_minute": 60,
    "five_minute": 300,
    "fifteen_minute": 900,
}


# ============================================================
# WELFORD ACCUMULATOR
# ============================================================


@dataclass
class WelfordAccumulator:
    """Running count / mean / sum of squared deviations."""

    count: int = 0
    mean: float = 0.0
    m2: float = 0.0

    def update(self, value: float) -> None:
        welford_update(self, value)

    @property
    def variance(self) -> float:
        """Sample variance (0 until two samples)."""
        return sample_variance(self.count, self.m2)

    def to_dict(self) -> Dict[str, Any]:
        return {"count": self.count, "mean": self.mean, "m2": self.m2}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "WelfordAccumulator":
        if not data:
            return cls()
        return cls(
            count=max(0, int(data.get("count", 0))),
            mean=float(data.get("mean", 0.0)),
            m2=max(0.0, float(data.get("m2", data.get("M2", 0.0)))),
        )


# ============================================================
# SLIDING WINDOW
# ============================================================


class SlidingWindow:
    """
    Ordered, capacity-bounded sequence of event timestamps.

    Backed by a deque so append and oldest-first eviction are O(1).
    """

    def __init__(self, capacity: int = WINDOW_CAPACITY, values: Optional[Iterable[float]] = None):
        self.capacity = capacity
        self._items: Deque[float] = deque(maxlen=capacity)
        if values:
            for value in values:
                self._items.append(float(value))

    def append(self, timestamp: float) -> None:
        self._items.append(float(timestamp))

    def count_since(self, cutoff: float) -> int:
        """Number of timestamps at or after ``cutoff``."""
        return sum(1 for ts in self._items if ts >= cutoff)

    def prune_before(self, cutoff: float) -> int:
        """Drop leading timestamps older than ``cutoff``; returns how many."""
        removed = 0
        while self._items and self._items[0] < cutoff:
            self._items.popleft()
            removed += 1
        return removed

    def to_list(self) -> List[float]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(self._items)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SlidingWindow):
            return NotImplemented
        return self.capacity == other.capacity and list(self._items) == list(other._items)

    def __repr__(self) -> str:
        return f"SlidingWindow(capacity={self.capacity}, size={len(self._items)})"


# ============================================================
# PROFILE ENTRIES
# ============================================================


@dataclass
class ReputationEntry:
    """Cached verdict of one reputation source."""

    source: str
    score: float
    confidence: float
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "score": self.score,
            "confidence": self.confidence,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReputationEntry":
        confidence = data.get("confidence")
        return cls(
            source=str(data["source"]),
            score=float(data.get("score", 0.5)),
            confidence=float(confidence) if confidence is not None else 0.8,
            timestamp=float(data.get("timestamp", 0.0)),
        )


@dataclass
class RiskHistoryEntry:
    timestamp: float
    risk_score: float

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp, "risk_score": self.risk_score}


def _time_series() -> Dict[str, SlidingWindow]:
    return {name: SlidingWindow(WINDOW_CAPACITY) for name in WINDOW_SPANS}


def _rate_stats() -> Dict[str, WelfordAccumulator]:
    return {name: WelfordAccumulator() for name in WINDOW_SPANS}


# ============================================================
# DOMAIN PROFILE
# ============================================================


@dataclass
class DomainProfile:
    """
    Statistical history of one registrable domain.

    Created on first observation, mutated once per observed event
    through ProfileMutation objects, evicted on TTL or capacity.
    """

    domain: str
    first_seen: float
    last_seen: float
    request_count: int = 0

    time_series: Dict[str, SlidingWindow] = field(default_factory=_time_series)
    rate_stats: Dict[str, WelfordAccumulator] = field(default_factory=_rate_stats)
    inter_arrival_stats: WelfordAccumulator = field(default_factory=WelfordAccumulator)

    access_hours: List[int] = field(default_factory=lambda: [0] * HOURS_IN_DAY)
    day_frequencies: List[int] = field(default_factory=lambda: [0] * DAYS_IN_WEEK)
    typical_referrers: Deque[str] = field(default_factory=lambda: deque(maxlen=REFERRER_CAPACITY))
    direct_access_to_sensitive: bool = False

    reputation_cache: List[ReputationEntry] = field(default_factory=list)
    risk_history: Deque[RiskHistoryEntry] = field(default_factory=lambda: deque(maxlen=RISK_HISTORY_CAPACITY))
    last_alerted: Optional[float] = None

    schema_version: int = CURRENT_SCHEMA_VERSION
    updated_at: float = 0.0

    @classmethod
    def create(cls, domain: str, timestamp: float) -> "DomainProfile":
        """Fresh profile: zero counters, zero-filled histograms."""
        return cls(domain=domain, first_seen=timestamp, last_seen=timestamp, updated_at=timestamp)

    def snapshot(self) -> "DomainProfile":
        """Independent deep copy handed to calculators."""
        return copy.deepcopy(self)

    # --------------------------------------------------------
    # ACCESSORS
    # --------------------------------------------------------

    def get_reputation(self, source: str) -> Optional[ReputationEntry]:
        for entry in self.reputation_cache:
            if entry.source == source:
                return entry
        return None

    def upsert_reputation(self, entry: ReputationEntry) -> None:
        """Insert or replace the entry for ``entry.source``."""
        for i, existing in enumerate(self.reputation_cache):
            if existing.source == entry.source:
                self.reputation_cache[i] = entry
                return
        self.reputation_cache.append(entry)

    def record_risk(self, timestamp: float, risk_score: float) -> None:
        self.risk_history.append(RiskHistoryEntry(timestamp, risk_score))

    def touch(self, timestamp: float) -> None:
        """Advance last_seen without ever moving it behind first_seen."""
        if timestamp > self.last_seen:
            self.last_seen = timestamp
        if self.last_seen < self.first_seen:
            self.last_seen = self.first_seen

    def most_common_referrer(self) -> Optional[str]:
        """Most frequent referrer in history; earliest seen wins ties."""
        if not self.typical_referrers:
            return None
        counts: Dict[str, int] = {}
        for referrer in self.typical_referrers:
            counts[referrer] = counts.get(referrer, 0) + 1
        best = None
        best_count = 0
        for referrer, count in counts.items():
            if count > best_count:
                best, best_count = referrer, count
        return best

    # --------------------------------------------------------
    # SERIALIZATION
    # --------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe record as stored under ``profile_<domain>``."""
        return {
            "domain": self.domain,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "request_count": self.request_count,
            "time_series": {name: window.to_list() for name, window in self.time_series.items()},
            "rate_stats": {name: acc.to_dict() for name, acc in self.rate_stats.items()},
            "inter_arrival_stats": self.inter_arrival_stats.to_dict(),
            "access_hours": list(self.access_hours),
            "day_frequencies": list(self.day_frequencies),
            "typical_referrers": list(self.typical_referrers),
            "direct_access_to_sensitive": self.direct_access_to_sensitive,
            "reputation_cache": [e.to_dict() for e in self.reputation_cache],
            "risk_history": [e.to_dict() for e in self.risk_history],
            "last_alerted": self.last_alerted,
            "schema_version": self.schema_version,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, record: Dict[str, Any]) -> "DomainProfile":
        """
        Build a profile from a current-version record.

        Older records must go through ``migrate_profile_record`` first.

        Raises:
            KeyError / ValueError / TypeError: On malformed records
        """
        first_seen = float(record["first_seen"])
        series = record.get("time_series") or {}
        stats = record.get("rate_stats") or {}

        reputation: List[ReputationEntry] = []
        for raw in record.get("reputation_cache") or []:
            entry = ReputationEntry.from_dict(raw)
            # unique per source: last one wins
            reputation = [e for e in reputation if e.source != entry.source]
            reputation.append(entry)

        return cls(
            domain=str(record["domain"]),
            first_seen=first_seen,
            last_seen=max(first_seen, float(record.get("last_seen", first_seen))),
            request_count=max(0, int(record.get("request_count", 0))),
            time_series={
                name: SlidingWindow(WINDOW_CAPACITY, series.get(name) or [])
                for name in WINDOW_SPANS
            },
            rate_stats={
                name: WelfordAccumulator.from_dict(stats.get(name))
                for name in WINDOW_SPANS
            },
            inter_arrival_stats=WelfordAccumulator.from_dict(record.get("inter_arrival_stats")),
            access_hours=_histogram(record.get("access_hours"), HOURS_IN_DAY),
            day_frequencies=_histogram(record.get("day_frequencies"), DAYS_IN_WEEK),
            typical_referrers=deque(
                (str(r) for r in record.get("typical_referrers") or []),
                maxlen=REFERRER_CAPACITY,
            ),
            direct_access_to_sensitive=bool(record.get("direct_access_to_sensitive", False)),
            reputation_cache=reputation,
            risk_history=deque(
                (
                    RiskHistoryEntry(float(e["timestamp"]), float(e["risk_score"]))
                    for e in record.get("risk_history") or []
                ),
                maxlen=RISK_HISTORY_CAPACITY,
            ),
            last_alerted=record.get("last_alerted"),
            schema_version=int(record.get("schema_version", CURRENT_SCHEMA_VERSION)),
            updated_at=float(record.get("updated_at", 0.0)),
        )


def _histogram(values: Optional[Iterable[Any]], size: int) -> List[int]:
    """Coerce to a non-negative int list of exactly ``size`` buckets."""
    result = [0] * size
    for i, value in enumerate(list(values or [])[:size]):
        try:
            result[i] = max(0, int(value))
        except (TypeError, ValueError):
            result[i] = 0
    return result


# ============================================================
# SCHEMA MIGRATION
# ============================================================


def _migrate_v1_to_v2(record: Dict[str, Any]) -> Dict[str, Any]:
    """Back-fill the behavioral fields with neutral defaults."""
    record.setdefault("inter_arrival_stats", {"count": 0, "mean": 0.0, "m2": 0.0})
    record["access_hours"] = _histogram(record.get("access_hours"), HOURS_IN_DAY)
    record["day_frequencies"] = _histogram(record.get("day_frequencies"), DAYS_IN_WEEK)
    record.setdefault("typical_referrers", [])
    record.setdefault("direct_access_to_sensitive", False)
    record.setdefault("reputation_cache", [])
    record.setdefault("risk_history", [])
    record.setdefault("last_alerted", None)
    record.setdefault("time_series", {name: [] for name in WINDOW_SPANS})
    record.setdefault(
        "rate_stats",
        {name: {"count": 0, "mean": 0.0, "m2": 0.0} for name in WINDOW_SPANS},
    )
    record["schema_version"] = 2
    return record


_MIGRATIONS = {
    1: _migrate_v1_to_v2,
}


def migrate_profile_record(record: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
    """
    Upgrade a stored record to CURRENT_SCHEMA_VERSION.

    Pure: the input mapping is never modified. A record without a
    version is treated as version 1.

    Args:
        record: Raw record as read from storage

    Returns:
        (upgraded_record, migrated) where ``migrated`` tells whether
        any step ran
    """
    upgraded = copy.deepcopy(record)
    version = int(upgraded.get("schema_version") or 1)
    migrated = False

    while version < CURRENT_SCHEMA_VERSION:
        step = _MIGRATIONS.get(version)
        if step is None:
            raise ValueError(f"No migration from schema version {version}")
        upgraded = step(upgraded)
        version = int(upgraded["schema_version"])
        migrated = True

    return upgraded, migrated


__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "WINDOW_CAPACITY",
    "REFERRER_CAPACITY",
    "RISK_HISTORY_CAPACITY",
    "WINDOW_SPANS",
    "WelfordAccumulator",
    "SlidingWindow",
    "ReputationEntry",
    "RiskHistoryEntry",
    "DomainProfile",
    "migrate_profile_record",
]
