"""
Domain Profile Tests.

============================================================
PURPOSE
============================================================
Tests for the per-domain profile record:
1. Bounded sequences (windows, referrers, risk history)
2. Serialization round trip of a populated profile
3. Schema migration of v1 records
4. Mutations applied to a live profile

============================================================
"""

import pytest

from domain_risk.mutations import BehaviorMutation, RateMutation, ReputationMutation
from domain_risk.profile import (
    CURRENT_SCHEMA_VERSION,
    REFERRER_CAPACITY,
    RISK_HISTORY_CAPACITY,
    WINDOW_CAPACITY,
    DomainProfile,
    ReputationEntry,
    SlidingWindow,
    migrate_profile_record,
)


T0 = 1_700_000_000.0


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def profile():
    """Fresh profile for example.com."""
    return DomainProfile.create("example.com", T0)


@pytest.fixture
def v1_record():
    """A record written before behavioral fields existed."""
    return {
        "domain": "legacy.com",
        "first_seen": T0,
        "last_seen": T0 + 60,
        "request_count": 3,
        "time_series": {
            "one_minute": [T0, T0 + 30, T0 + 60],
            "five_minute": [T0, T0 + 30, T0 + 60],
            "fifteen_minute": [T0, T0 + 30, T0 + 60],
        },
        "rate_stats": {
            "one_minute": {"count": 3, "mean": 1.0, "M2": 0.0},
            "five_minute": {"count": 3, "mean": 1.0, "M2": 0.0},
            "fifteen_minute": {"count": 3, "mean": 1.0, "M2": 0.0},
        },
        "schema_version": 1,
    }


# ============================================================
# SLIDING WINDOW TESTS
# ============================================================

class TestSlidingWindow:
    """Tests for SlidingWindow."""

    def test_capacity_evicts_oldest(self):
        window = SlidingWindow(capacity=WINDOW_CAPACITY)
        for i in range(WINDOW_CAPACITY + 5):
            window.append(T0 + i)

        assert len(window) == WINDOW_CAPACITY
        assert window.to_list()[0] == T0 + 5
        assert window.to_list()[-1] == T0 + WINDOW_CAPACITY + 4

    def test_count_since(self):
        window = SlidingWindow(values=[T0, T0 + 10, T0 + 20])
        assert window.count_since(T0 + 10) == 2

    def test_prune_before(self):
        window = SlidingWindow(values=[T0, T0 + 10, T0 + 20])
        assert window.prune_before(T0 + 15) == 2
        assert window.to_list() == [T0 + 20]


# ============================================================
# PROFILE TESTS
# ============================================================

class TestDomainProfile:
    """Tests for DomainProfile."""

    def test_create_defaults(self, profile):
        assert profile.request_count == 0
        assert profile.access_hours == [0] * 24
        assert profile.day_frequencies == [0] * 7
        assert profile.schema_version == CURRENT_SCHEMA_VERSION
        assert profile.last_seen >= profile.first_seen

    def test_bounded_referrers_and_history(self, profile):
        for i in range(REFERRER_CAPACITY + 10):
            profile.typical_referrers.append(f"https://r{i}.com/")
        for i in range(RISK_HISTORY_CAPACITY + 10):
            profile.record_risk(T0 + i, 0.1)

        assert len(profile.typical_referrers) == REFERRER_CAPACITY
        assert profile.typical_referrers[0] == "https://r10.com/"
        assert len(profile.risk_history) == RISK_HISTORY_CAPACITY

    def test_most_common_referrer(self, profile):
        for ref in ["https://a.com/", "https://b.com/", "https://b.com/"]:
            profile.typical_referrers.append(ref)
        assert profile.most_common_referrer() == "https://b.com/"

    def test_snapshot_is_independent(self, profile):
        snapshot = profile.snapshot()
        snapshot.access_hours[3] = 99
        snapshot.time_series["one_minute"].append(T0)

        assert profile.access_hours[3] == 0
        assert len(profile.time_series["one_minute"]) == 0

    def test_round_trip(self, profile):
        RateMutation(T0 + 5).apply(profile)
        BehaviorMutation(hour=10, day=2, referrer="https://ref.com/", inter_arrival=5.0).apply(profile)
        ReputationMutation((ReputationEntry("PhishTank", 0.0, 0.8, T0),)).apply(profile)
        profile.record_risk(T0 + 5, 0.42)
        profile.last_alerted = T0

        restored = DomainProfile.from_dict(profile.to_dict())

        assert restored.to_dict() == profile.to_dict()

    def test_reputation_upsert_unique(self, profile):
        profile.upsert_reputation(ReputationEntry("OpenPhish", 0.0, 0.8, T0))
        profile.upsert_reputation(ReputationEntry("OpenPhish", 1.0, 0.8, T0 + 1))

        assert len(profile.reputation_cache) == 1
        assert profile.get_reputation("OpenPhish").score == 1.0


# ============================================================
# MUTATION TESTS
# ============================================================

class TestMutations:
    """Tests for profile mutations."""

    def test_rate_mutation(self, profile):
        RateMutation(T0 + 10).apply(profile)

        assert profile.request_count == 1
        assert profile.last_seen == T0 + 10
        for name in ("one_minute", "five_minute", "fifteen_minute"):
            assert profile.time_series[name].to_list() == [T0 + 10]
            assert profile.rate_stats[name].count == 1

    def test_rate_mutation_prunes_old_entries(self, profile):
        RateMutation(T0).apply(profile)
        RateMutation(T0 + 120).apply(profile)

        assert profile.time_series["one_minute"].to_list() == [T0 + 120]
        assert profile.time_series["five_minute"].to_list() == [T0, T0 + 120]

    def test_behavior_mutation(self, profile):
        BehaviorMutation(
            hour=23,
            day=0,
            referrer="https://ref.com/",
            inter_arrival=12.0,
            sensitive_main_frame=True,
        ).apply(profile)

        assert profile.access_hours[23] == 1
        assert profile.day_frequencies[0] == 1
        assert list(profile.typical_referrers) == ["https://ref.com/"]
        assert profile.inter_arrival_stats.count == 1
        assert profile.direct_access_to_sensitive is True

    def test_behavior_mutation_without_interval(self, profile):
        BehaviorMutation(hour=1, day=1).apply(profile)
        assert profile.inter_arrival_stats.count == 0
        assert len(profile.typical_referrers) == 0

    def test_reputation_mutation_keeps_newer(self, profile):
        profile.upsert_reputation(ReputationEntry("PhishTank", 1.0, 0.9, T0 + 100))
        ReputationMutation((ReputationEntry("PhishTank", 0.0, 0.8, T0),)).apply(profile)

        assert profile.get_reputation("PhishTank").score == 1.0


# ============================================================
# MIGRATION TESTS
# ============================================================

class TestMigration:
    """Tests for schema migration."""

    def test_v1_is_upgraded(self, v1_record):
        upgraded, migrated = migrate_profile_record(v1_record)

        assert migrated is True
        assert upgraded["schema_version"] == CURRENT_SCHEMA_VERSION
        assert upgraded["access_hours"] == [0] * 24
        assert upgraded["day_frequencies"] == [0] * 7
        assert upgraded["typical_referrers"] == []
        assert upgraded["direct_access_to_sensitive"] is False
        assert upgraded["last_alerted"] is None

        profile = DomainProfile.from_dict(upgraded)
        assert profile.request_count == 3
        assert profile.rate_stats["one_minute"].count == 3

    def test_migration_is_pure(self, v1_record):
        migrate_profile_record(v1_record)
        assert v1_record["schema_version"] == 1
        assert "access_hours" not in v1_record

    def test_missing_version_treated_as_v1(self, v1_record):
        del v1_record["schema_version"]
        upgraded, migrated = migrate_profile_record(v1_record)
        assert migrated is True
        assert upgraded["schema_version"] == CURRENT_SCHEMA_VERSION

    def test_current_version_untouched(self, profile):
        record = profile.to_dict()
        upgraded, migrated = migrate_profile_record(record)
        assert migrated is False
        assert upgraded == record
