"""
Domain Risk Engine - Profile Mutations.

============================================================
PURPOSE
============================================================
Calculators read a snapshot of the profile and describe the
changes they want as mutation objects. The engine applies them to
the live profile, in metric order, inside the per-domain lock,
and persists the result once.

No mutation performs I/O.

============================================================
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple

from .profile import WINDOW_SPANS, DomainProfile, ReputationEntry


class ProfileMutation(ABC):
    """A pure in-memory change to a DomainProfile."""

    @abstractmethod
    def apply(self, profile: DomainProfile) -> None:
        pass


@dataclass(frozen=True)
class NoMutation(ProfileMutation):
    def apply(self, profile: DomainProfile) -> None:
        return None


@dataclass(frozen=True)
class RateMutation(ProfileMutation):
    """
    Record one request for the rate metric.

    - appends the event to every window and drops entries older
      than that window's span
    - feeds the constant 1 into each window accumulator
    - increments request_count and advances last_seen
    """

    timestamp: float

    def apply(self, profile: DomainProfile) -> None:
        for name, span in WINDOW_SPANS.items():
            window = profile.time_series[name]
            window.append(self.timestamp)
            window.prune_before(self.timestamp - span)
            profile.rate_stats[name].update(1.0)

        profile.request_count += 1
        profile.touch(self.timestamp)


@dataclass(frozen=True)
class ReputationMutation(ProfileMutation):
    """Upsert refreshed verdicts into the profile's reputation cache."""

    entries: Tuple[ReputationEntry, ...] = ()

    def apply(self, profile: DomainProfile) -> None:
        for entry in self.entries:
            existing = profile.get_reputation(entry.source)
            # a concurrent merge may already hold a newer verdict
            if existing is not None and existing.timestamp > entry.timestamp:
                continue
            profile.upsert_reputation(entry)


@dataclass(frozen=True)
class BehaviorMutation(ProfileMutation):
    """Teach the profile one more observation of when/how it is visited."""

    hour: int
    day: int
    referrer: Optional[str] = None
    inter_arrival: Optional[float] = None
    sensitive_main_frame: bool = False

    def apply(self, profile: DomainProfile) -> None:
        profile.access_hours[self.hour] += 1
        profile.day_frequencies[self.day] += 1
        if self.referrer:
            profile.typical_referrers.append(self.referrer)
        if self.inter_arrival is not None:
            profile.inter_arrival_stats.update(self.inter_arrival)
        if self.sensitive_main_frame:
            profile.direct_access_to_sensitive = True


__all__ = [
    "ProfileMutation",
    "NoMutation",
    "RateMutation",
    "ReputationMutation",
    "BehaviorMutation",
]
