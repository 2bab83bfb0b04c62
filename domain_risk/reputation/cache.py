"""
Reputation verdict cache.

============================================================
PURPOSE
============================================================
Keeps per-(domain, source) verdicts in the key-value store under
``rep_<domain>_<source_slug>`` so repeated lookups within the TTL
never leave the process.

- Fresh entries are served without calling the source
- Concurrent misses for the same key share one in-flight fetch
- Cache write failures are logged, never raised

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from ..storage import REPUTATION_PREFIX, KeyValueStore, reputation_prefix


logger = logging.getLogger(__name__)


def source_slug(source: str) -> str:
    """``Google Safe Browsing`` -> ``google_safe_browsing``."""
    return source.strip().lower().replace(" ", "_")


def reputation_key(domain: str, source: str) -> str:
    return f"{reputation_prefix(domain)}{source_slug(source)}"


@dataclass(frozen=True)
class CachedVerdict:
    """Score a source gave a domain, and when it was obtained."""

    score: float
    confidence: float
    cached_at: float

    def is_fresh(self, now: float, ttl_hours: float) -> bool:
        return is_fresh(self, now, ttl_hours)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "confidence": self.confidence,
            "cached_at": self.cached_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CachedVerdict":
        confidence = data.get("confidence")
        return cls(
            score=float(data["score"]),
            confidence=float(confidence) if confidence is not None else 0.8,
            cached_at=float(data.get("cached_at", data.get("cachedAt", 0.0))),
        )


def is_fresh(entry: Optional[CachedVerdict], now: float, ttl_hours: float) -> bool:
    """An entry is valid while younger than ``ttl_hours``."""
    if entry is None:
        return False
    return now - entry.cached_at < ttl_hours * 3600.0


class ReputationCache:
    """
    Verdict cache on top of a KeyValueStore.

    Example:
        verdict = await cache.lookup(
            "example.com", "PhishTank", fetch, now=clock.timestamp(), ttl_hours=24,
        )
    """

    def __init__(self, kv: KeyValueStore):
        self._kv = kv
        self._in_flight: Dict[str, "asyncio.Task[CachedVerdict]"] = {}

    async def get(self, domain: str, source: str) -> Optional[CachedVerdict]:
        key = reputation_key(domain, source)
        try:
            record = await self._kv.get(key)
        except Exception as e:
            logger.warning(f"Reputation cache read failed for {key}: {e}")
            return None
        if record is None:
            return None
        try:
            return CachedVerdict.from_dict(record)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed reputation cache entry {key}: {e}")
            return None

    async def put(self, domain: str, source: str, entry: CachedVerdict) -> None:
        key = reputation_key(domain, source)
        try:
            await self._kv.put(key, entry.to_dict())
        except Exception as e:
            logger.warning(f"Reputation cache write failed for {key}: {e}")

    async def lookup(
        self,
        domain: str,
        source: str,
        fetch: Callable[[], Awaitable[CachedVerdict]],
        now: float,
        ttl_hours: float,
    ) -> CachedVerdict:
        """
        Return a fresh verdict for (domain, source).

        Args:
            domain: Registrable domain
            source: Source name
            fetch: Coroutine factory querying the source
            now: Current epoch seconds
            ttl_hours: Freshness window

        Returns:
            Cached verdict when fresh, otherwise the fetched one (which
            is then written back)

        Raises:
            Whatever ``fetch`` raises; failed fetches are not cached
        """
        cached = await self.get(domain, source)
        if is_fresh(cached, now, ttl_hours):
            logger.debug(f"Reputation cache hit: {domain} / {source}")
            return cached

        key = reputation_key(domain, source)
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch_and_store(domain, source, fetch))
            self._in_flight[key] = task
            task.add_done_callback(lambda _t, k=key: self._in_flight.pop(k, None))
        else:
            logger.debug(f"Joining in-flight reputation lookup: {domain} / {source}")

        return await asyncio.shield(task)

    async def _fetch_and_store(
        self,
        domain: str,
        source: str,
        fetch: Callable[[], Awaitable[CachedVerdict]],
    ) -> CachedVerdict:
        verdict = await fetch()
        await self.put(domain, source, verdict)
        return verdict

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)


__all__ = [
    "REPUTATION_PREFIX",
    "source_slug",
    "reputation_key",
    "CachedVerdict",
    "is_fresh",
    "ReputationCache",
]
