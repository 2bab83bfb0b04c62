"""
Profile Store Tests.

============================================================
PURPOSE
============================================================
Tests for the key-value backends and ProfileStore:
1. Atomic profile + meta writes
2. TTL eviction on read and in bulk
3. Capacity pruning (least recently accessed first)
4. Lazy migration on read
5. Backend failures surfacing as StorageFailure

============================================================
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from domain_risk.clock import MockClock
from domain_risk.config import StorageConfig
from domain_risk.database import create_all_tables, create_database_engine, create_session_factory
from domain_risk.exceptions import StorageFailure
from domain_risk.profile import CURRENT_SCHEMA_VERSION, DomainProfile
from domain_risk.reputation.cache import reputation_key
from domain_risk.storage import (
    InMemoryKeyValueStore,
    ProfileStore,
    SqlKeyValueStore,
    meta_key,
    profile_key,
)


START = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    return MockClock(START)


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


@pytest.fixture
def store(kv, clock):
    return ProfileStore(kv, StorageConfig(), clock)


@pytest.fixture
def sql_kv():
    """SQLite in-memory backend."""
    engine = create_database_engine("sqlite://")
    create_all_tables(engine)
    return SqlKeyValueStore(create_session_factory(engine))


# ============================================================
# KEY-VALUE BACKENDS
# ============================================================

class TestInMemoryKeyValueStore:
    """Tests for the process-local backend."""

    @pytest.mark.asyncio
    async def test_put_get_delete(self, kv):
        await kv.put("profile_a.com", {"x": 1})
        assert await kv.get("profile_a.com") == {"x": 1}

        await kv.delete("profile_a.com")
        assert await kv.get("profile_a.com") is None

    @pytest.mark.asyncio
    async def test_records_are_copied(self, kv):
        record = {"values": [1, 2]}
        await kv.put("k", record)
        record["values"].append(3)

        stored = await kv.get("k")
        assert stored == {"values": [1, 2]}

    @pytest.mark.asyncio
    async def test_list_all_prefix(self, kv):
        await kv.put_many({"profile_a.com": {}, "meta_a.com": {}, "profile_b.com": {}})
        listed = await kv.list_all("profile_")
        assert set(listed) == {"profile_a.com", "profile_b.com"}


class TestSqlKeyValueStore:
    """Tests for the SQLAlchemy backend."""

    @pytest.mark.asyncio
    async def test_round_trip(self, sql_kv):
        await sql_kv.put_many({"profile_a.com": {"n": 1}, "meta_a.com": {"size": 10}})

        assert await sql_kv.get("profile_a.com") == {"n": 1}
        assert await sql_kv.get("missing") is None

    @pytest.mark.asyncio
    async def test_overwrite(self, sql_kv):
        await sql_kv.put("k", {"v": 1})
        await sql_kv.put("k", {"v": 2})
        assert await sql_kv.get("k") == {"v": 2}

    @pytest.mark.asyncio
    async def test_list_and_delete_many(self, sql_kv):
        await sql_kv.put_many({"profile_a.com": {}, "profile_b.com": {}, "rep_a.com_phishtank": {}})

        listed = await sql_kv.list_all("profile_")
        assert set(listed) == {"profile_a.com", "profile_b.com"}

        await sql_kv.delete_many(["profile_a.com", "profile_b.com"])
        assert await sql_kv.list_all("profile_") == {}
        assert await sql_kv.get("rep_a.com_phishtank") == {}


# ============================================================
# PROFILE STORE
# ============================================================

class TestProfileStore:
    """Tests for ProfileStore."""

    @pytest.mark.asyncio
    async def test_put_writes_profile_and_meta(self, store, kv, clock):
        profile = DomainProfile.create("example.com", clock.timestamp())

        assert await store.put("example.com", profile) is True

        meta = await kv.get(meta_key("example.com"))
        assert meta["domain"] == "example.com"
        assert meta["last_access"] == clock.timestamp()
        assert meta["size"] > 0
        assert (await kv.get(profile_key("example.com")))["updated_at"] == clock.timestamp()

    @pytest.mark.asyncio
    async def test_get_round_trip(self, store, clock):
        profile = DomainProfile.create("example.com", clock.timestamp())
        profile.request_count = 7
        await store.put("example.com", profile)

        loaded = await store.get("example.com")
        assert loaded.request_count == 7

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get("nothing.com") is None

    @pytest.mark.asyncio
    async def test_disabled_storage_skips_write(self, kv, clock):
        store = ProfileStore(kv, StorageConfig(enabled=False), clock)
        profile = DomainProfile.create("example.com", clock.timestamp())

        assert await store.put("example.com", profile) is False
        assert len(kv) == 0

    @pytest.mark.asyncio
    async def test_expired_profile_evicted_on_read(self, store, kv, clock):
        """A profile older than the TTL is deleted and reported absent."""
        profile = DomainProfile.create("old.com", clock.timestamp())
        await store.put("old.com", profile)

        clock.advance(days=91)

        assert await store.get("old.com") is None
        assert profile_key("old.com") not in kv
        assert meta_key("old.com") not in kv

    @pytest.mark.asyncio
    async def test_expired_profile_drops_cached_verdicts(self, store, kv, clock):
        """Reputation verdicts cached for an evicted domain go with it."""
        await store.put("old.com", DomainProfile.create("old.com", clock.timestamp()))
        await kv.put(reputation_key("old.com", "PhishTank"), {"malicious": False})
        await kv.put(reputation_key("old.com", "TLS Certificate"), {"malicious": False})
        await kv.put(reputation_key("bold.com", "PhishTank"), {"malicious": False})

        clock.advance(days=91)

        assert await store.get("old.com") is None
        assert await kv.list_all("rep_old.com_") == {}
        assert reputation_key("bold.com", "PhishTank") in kv

    @pytest.mark.asyncio
    async def test_evict_expired_drops_cached_verdicts(self, store, kv, clock):
        await store.put("old.com", DomainProfile.create("old.com", clock.timestamp()))
        await kv.put(reputation_key("old.com", "OpenPhish"), {"malicious": False})
        clock.advance(days=91)
        await store.put("new.com", DomainProfile.create("new.com", clock.timestamp()))
        await kv.put(reputation_key("new.com", "OpenPhish"), {"malicious": False})

        assert await store.evict_expired() == 1
        assert reputation_key("old.com", "OpenPhish") not in kv
        assert reputation_key("new.com", "OpenPhish") in kv

    @pytest.mark.asyncio
    async def test_evict_expired(self, store, kv, clock):
        await store.put("old.com", DomainProfile.create("old.com", clock.timestamp()))
        clock.advance(days=60)
        await store.put("new.com", DomainProfile.create("new.com", clock.timestamp()))
        clock.advance(days=31)

        assert await store.evict_expired() == 1
        assert profile_key("old.com") not in kv
        assert profile_key("new.com") in kv

    @pytest.mark.asyncio
    async def test_enforce_capacity_prunes_least_recent(self, kv, clock):
        store = ProfileStore(kv, StorageConfig(max_profiles=10, capacity_check_interval=1000), clock)
        for i in range(11):
            await store.put(f"d{i}.com", DomainProfile.create(f"d{i}.com", clock.timestamp()))
            clock.advance(seconds=1)

        removed = await store.enforce_capacity()

        assert removed == 2
        assert profile_key("d0.com") not in kv
        assert profile_key("d1.com") not in kv
        assert meta_key("d0.com") not in kv
        assert await store.count() == 9

    @pytest.mark.asyncio
    async def test_enforce_capacity_drops_cached_verdicts(self, kv, clock):
        store = ProfileStore(kv, StorageConfig(max_profiles=2, capacity_check_interval=1000), clock)
        for i in range(3):
            await store.put(f"d{i}.com", DomainProfile.create(f"d{i}.com", clock.timestamp()))
            await kv.put(reputation_key(f"d{i}.com", "Google Safe Browsing"), {"malicious": False})
            clock.advance(seconds=1)

        assert await store.enforce_capacity() == 1

        assert reputation_key("d0.com", "Google Safe Browsing") not in kv
        assert reputation_key("d1.com", "Google Safe Browsing") in kv
        assert len(kv) == 6

    @pytest.mark.asyncio
    async def test_failed_capacity_check_keeps_write(self, kv, clock, caplog):
        """The write is reported even when the follow-up capacity check fails."""
        store = ProfileStore(kv, StorageConfig(capacity_check_interval=1), clock)
        kv.list_all = AsyncMock(side_effect=OSError("scan failed"))

        with caplog.at_level("WARNING", logger="domain_risk.storage"):
            written = await store.put("a.com", DomainProfile.create("a.com", clock.timestamp()))

        assert written is True
        assert profile_key("a.com") in kv
        assert "Capacity check failed after writing a.com" in caplog.text

    @pytest.mark.asyncio
    async def test_enforce_capacity_under_limit(self, store):
        assert await store.enforce_capacity() == 0

    @pytest.mark.asyncio
    async def test_capacity_checked_periodically(self, kv, clock):
        store = ProfileStore(kv, StorageConfig(max_profiles=2, capacity_check_interval=3), clock)
        for i in range(3):
            await store.put(f"d{i}.com", DomainProfile.create(f"d{i}.com", clock.timestamp()))
            clock.advance(seconds=1)

        assert await store.count() == 2
        assert profile_key("d0.com") not in kv

    @pytest.mark.asyncio
    async def test_v1_record_migrated_on_read(self, store, kv, clock):
        now = clock.timestamp()
        await kv.put(profile_key("legacy.com"), {
            "domain": "legacy.com",
            "first_seen": now,
            "last_seen": now,
            "request_count": 2,
            "schema_version": 1,
        })

        profile = await store.get("legacy.com")

        assert profile.schema_version == CURRENT_SCHEMA_VERSION
        assert profile.access_hours == [0] * 24
        # not rewritten until the next put
        assert (await kv.get(profile_key("legacy.com")))["schema_version"] == 1

    @pytest.mark.asyncio
    async def test_backend_failure_raises_storage_failure(self, clock):
        kv = InMemoryKeyValueStore()
        kv.put_many = AsyncMock(side_effect=OSError("disk full"))
        store = ProfileStore(kv, StorageConfig(), clock)

        with pytest.raises(StorageFailure) as exc_info:
            await store.put("example.com", DomainProfile.create("example.com", clock.timestamp()))

        assert exc_info.value.operation == "put"

    @pytest.mark.asyncio
    async def test_corrupt_record_raises_storage_failure(self, store, kv):
        await kv.put(profile_key("bad.com"), {"domain": "bad.com", "schema_version": 2})

        with pytest.raises(StorageFailure):
            await store.get("bad.com")


class TestMockClock:
    """The test clock drives every TTL above."""

    def test_advance_and_set(self, clock):
        clock.advance(hours=1, seconds=30)
        assert clock.timestamp() == START.timestamp() + 3630
        assert clock.now().tzinfo is not None

        clock.set_time(START)
        assert clock.now() == START
        assert clock.seconds_since(START.timestamp() - 10) == 10
