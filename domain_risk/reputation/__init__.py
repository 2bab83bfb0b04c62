"""
Domain Risk Engine - Reputation.

External verdict lookups, the per-(domain, source) verdict cache
and the bulk feed cache used by the reputation metric.
"""

from .cache import (
    CachedVerdict,
    ReputationCache,
    is_fresh,
    reputation_key,
    source_slug,
)
from .feeds import FeedCache
from .sources import (
    GoogleSafeBrowsingSource,
    OpenPhishSource,
    PhishTankSource,
    ReputationSource,
    SourceVerdict,
    TlsProbe,
    build_default_sources,
)


__all__ = [
    "CachedVerdict",
    "ReputationCache",
    "is_fresh",
    "reputation_key",
    "source_slug",
    "FeedCache",
    "GoogleSafeBrowsingSource",
    "OpenPhishSource",
    "PhishTankSource",
    "ReputationSource",
    "SourceVerdict",
    "TlsProbe",
    "build_default_sources",
]
