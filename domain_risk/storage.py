"""
Domain Risk Engine - Storage.

============================================================
PURPOSE
============================================================
Key-value persistence contract and the DomainProfile store
built on top of it.

Provides clean interface for:
- Loading profiles (with lazy migration and TTL eviction)
- Writing a profile and its metadata as one atomic batch
- TTL sweeps and capacity pruning (approximate LRU)

============================================================
KEY LAYOUT
============================================================
profile_<domain>        DomainProfile record
meta_<domain>           {domain, size, last_access}
rep_<domain>_<source>   cached reputation verdict (see reputation.cache)

============================================================
"""

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from .clock import ClockProtocol, SystemClock
from .config import StorageConfig
from .database import transaction_scope
from .exceptions import DomainRiskError, StorageFailure
from .models import KeyValueRecord
from .profile import DomainProfile, migrate_profile_record


logger = logging.getLogger(__name__)

PROFILE_PREFIX = "profile_"
META_PREFIX = "meta_"
REPUTATION_PREFIX = "rep_"


def profile_key(domain: str) -> str:
    return f"{PROFILE_PREFIX}{domain}"


def meta_key(domain: str) -> str:
    return f"{META_PREFIX}{domain}"


def reputation_prefix(domain: str) -> str:
    return f"{REPUTATION_PREFIX}{domain}_"


# ============================================================
# KEY-VALUE CONTRACT
# ============================================================


class KeyValueStore(ABC):
    """
    Durable key-value store consumed by the engine.

    Implementations must make ``put_many`` all-or-nothing.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the record stored under ``key`` or None."""
        pass

    @abstractmethod
    async def put_many(self, records: Dict[str, Dict[str, Any]]) -> None:
        """Atomically write several records."""
        pass

    @abstractmethod
    async def delete_many(self, keys: Iterable[str]) -> None:
        """Remove several keys; missing keys are ignored."""
        pass

    @abstractmethod
    async def list_all(self, prefix: str = "") -> Dict[str, Dict[str, Any]]:
        """Return every record whose key starts with ``prefix``."""
        pass

    async def put(self, key: str, record: Dict[str, Any]) -> None:
        await self.put_many({key: record})

    async def delete(self, key: str) -> None:
        await self.delete_many([key])


class InMemoryKeyValueStore(KeyValueStore):
    """
    Process-local store.

    Records are copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Any]] = {}

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        record = self._data.get(key)
        return copy.deepcopy(record) if record is not None else None

    async def put_many(self, records: Dict[str, Dict[str, Any]]) -> None:
        staged = {key: copy.deepcopy(value) for key, value in records.items()}
        self._data.update(staged)

    async def delete_many(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._data.pop(key, None)

    async def list_all(self, prefix: str = "") -> Dict[str, Dict[str, Any]]:
        return {
            key: copy.deepcopy(value)
            for key, value in self._data.items()
            if key.startswith(prefix)
        }

    def keys(self) -> List[str]:
        return list(self._data.keys())

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)


class SqlKeyValueStore(KeyValueStore):
    """
    SQLAlchemy-backed store: one JSON row per key.

    Blocking session work runs in a worker thread; each batch is a
    single transaction.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._get_sync, key)

    async def put_many(self, records: Dict[str, Dict[str, Any]]) -> None:
        await asyncio.to_thread(self._put_many_sync, records)

    async def delete_many(self, keys: Iterable[str]) -> None:
        await asyncio.to_thread(self._delete_many_sync, list(keys))

    async def list_all(self, prefix: str = "") -> Dict[str, Dict[str, Any]]:
        return await asyncio.to_thread(self._list_all_sync, prefix)

    # --------------------------------------------------------
    # SYNC IMPLEMENTATION
    # --------------------------------------------------------

    def _get_sync(self, key: str) -> Optional[Dict[str, Any]]:
        with transaction_scope(self._session_factory) as session:
            row = session.get(KeyValueRecord, key)
            return copy.deepcopy(row.value) if row is not None else None

    def _put_many_sync(self, records: Dict[str, Dict[str, Any]]) -> None:
        with transaction_scope(self._session_factory) as session:
            for key, value in records.items():
                session.merge(KeyValueRecord(key=key, value=value))

    def _delete_many_sync(self, keys: List[str]) -> None:
        if not keys:
            return
        with transaction_scope(self._session_factory) as session:
            session.execute(delete(KeyValueRecord).where(KeyValueRecord.key.in_(keys)))

    def _list_all_sync(self, prefix: str) -> Dict[str, Dict[str, Any]]:
        with transaction_scope(self._session_factory) as session:
            stmt = select(KeyValueRecord)
            if prefix:
                stmt = stmt.where(KeyValueRecord.key.startswith(prefix, autoescape=True))
            rows = session.execute(stmt).scalars().all()
            return {row.key: copy.deepcopy(row.value) for row in rows}


# ============================================================
# PROFILE STORE
# ============================================================


class ProfileStore:
    """
    CRUD over DomainProfile records.

    ============================================================
    METHODS
    ============================================================
    - get: load, migrate, evict on TTL
    - put: atomic profile + meta write
    - delete / evict_expired / enforce_capacity
    ============================================================
    """

    def __init__(
        self,
        kv: KeyValueStore,
        config: Optional[StorageConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._kv = kv
        self.config = config or StorageConfig()
        self._clock = clock or SystemClock()
        self._writes_since_check = 0

    @property
    def kv(self) -> KeyValueStore:
        return self._kv

    def create(self, domain: str, timestamp: float) -> DomainProfile:
        return DomainProfile.create(domain, timestamp)

    # --------------------------------------------------------
    # READ
    # --------------------------------------------------------

    async def get(self, domain: str) -> Optional[DomainProfile]:
        """
        Load the profile for ``domain``.

        Returns:
            The profile, or None when absent or expired (expired
            records are deleted on the way)

        Raises:
            StorageFailure: On backend errors or corrupt records
        """
        key = profile_key(domain)
        record = await self._call(self._kv.get(key), key, "get")
        if record is None:
            return None

        try:
            upgraded, migrated = migrate_profile_record(record)
            profile = DomainProfile.from_dict(upgraded)
        except (KeyError, TypeError, ValueError) as e:
            raise StorageFailure(
                f"Corrupt profile record for {domain}",
                key=key,
                operation="decode",
                cause=e,
            ) from e

        if migrated:
            logger.debug(f"Migrated profile {domain} to schema v{profile.schema_version}")

        if self._is_expired(profile):
            logger.info(f"Evicting expired profile {domain}")
            await self.delete(domain)
            return None

        return profile

    # --------------------------------------------------------
    # WRITE
    # --------------------------------------------------------

    async def put(self, domain: str, profile: DomainProfile) -> bool:
        """
        Persist ``profile`` and its metadata as one batch.

        Returns:
            False when storage is disabled, True when written

        Raises:
            StorageFailure: When the batch could not be written
        """
        if not self.config.enabled:
            return False

        now = self._clock.timestamp()
        profile.updated_at = now
        record = profile.to_dict()
        meta = {
            "domain": domain,
            "size": len(json.dumps(record)),
            "last_access": now,
        }

        key = profile_key(domain)
        await self._call(
            self._kv.put_many({key: record, meta_key(domain): meta}),
            key,
            "put",
        )

        self._writes_since_check += 1
        if self._writes_since_check >= self.config.capacity_check_interval:
            self._writes_since_check = 0
            try:
                await self.enforce_capacity()
            except StorageFailure as e:
                # the profile itself is already committed
                logger.warning(f"Capacity check failed after writing {domain}: {e.to_log_format()}")
        return True

    async def delete(self, domain: str) -> None:
        """Remove the profile, its metadata and its cached reputation verdicts."""
        keys = await self._keys_for([domain], "delete")
        await self._call(
            self._kv.delete_many(keys),
            profile_key(domain),
            "delete",
        )

    # --------------------------------------------------------
    # MAINTENANCE
    # --------------------------------------------------------

    async def count(self) -> int:
        records = await self._call(self._kv.list_all(PROFILE_PREFIX), PROFILE_PREFIX, "list")
        return len(records)

    async def evict_expired(self) -> int:
        """
        Delete every profile whose last_seen is older than the TTL.

        Returns:
            Number of evicted profiles
        """
        records = await self._call(self._kv.list_all(PROFILE_PREFIX), PROFILE_PREFIX, "list")
        cutoff = self._clock.timestamp() - self.config.profile_ttl_seconds

        expired: List[str] = []
        for key, record in records.items():
            try:
                last_seen = float(record.get("last_seen", 0.0))
            except (TypeError, ValueError):
                last_seen = 0.0
            if last_seen < cutoff:
                expired.append(key[len(PROFILE_PREFIX):])

        if expired:
            keys = await self._keys_for(expired, "evict")
            await self._call(self._kv.delete_many(keys), PROFILE_PREFIX, "evict")
            logger.info(f"Evicted {len(expired)} expired profiles")
        return len(expired)

    async def enforce_capacity(self) -> int:
        """
        Prune the least recently accessed profiles once over capacity.

        Ranks by ``meta.last_access`` and removes ``prune_fraction`` of
        all profiles (at least one). Ties are broken arbitrarily.

        Returns:
            Number of removed profiles
        """
        profiles = await self._call(self._kv.list_all(PROFILE_PREFIX), PROFILE_PREFIX, "list")
        total = len(profiles)
        if total <= self.config.max_profiles:
            return 0

        metas = await self._call(self._kv.list_all(META_PREFIX), META_PREFIX, "list")

        def last_access(domain: str) -> float:
            meta = metas.get(meta_key(domain)) or {}
            try:
                return float(meta.get("last_access", 0.0))
            except (TypeError, ValueError):
                return 0.0

        domains = [key[len(PROFILE_PREFIX):] for key in profiles]
        domains.sort(key=last_access)

        remove_count = max(1, int(total * self.config.prune_fraction))
        victims = domains[:remove_count]
        keys = await self._keys_for(victims, "prune")
        await self._call(self._kv.delete_many(keys), PROFILE_PREFIX, "prune")

        logger.info(
            f"Storage over capacity ({total} > {self.config.max_profiles}), "
            f"pruned {len(victims)} least recently accessed profiles"
        )
        return len(victims)

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    async def _keys_for(self, domains: List[str], operation: str) -> List[str]:
        """Every key owned by ``domains``, cached reputation verdicts included."""
        keys = [k for domain in domains for k in (profile_key(domain), meta_key(domain))]
        prefix = reputation_prefix(domains[0]) if len(domains) == 1 else REPUTATION_PREFIX
        verdicts = await self._call(self._kv.list_all(prefix), prefix, operation)
        owned = tuple(reputation_prefix(domain) for domain in domains)
        keys.extend(key for key in verdicts if key.startswith(owned))
        return keys

    def _is_expired(self, profile: DomainProfile) -> bool:
        return self._clock.seconds_since(profile.last_seen) > self.config.profile_ttl_seconds

    async def _call(self, awaitable, key: str, operation: str):
        """Await a backend call, mapping foreign errors to StorageFailure."""
        try:
            return await awaitable
        except DomainRiskError:
            raise
        except Exception as e:
            raise StorageFailure(
                f"Storage {operation} failed: {e}",
                key=key,
                operation=operation,
                cause=e,
            ) from e


__all__ = [
    "PROFILE_PREFIX",
    "META_PREFIX",
    "profile_key",
    "meta_key",
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "SqlKeyValueStore",
    "ProfileStore",
]
