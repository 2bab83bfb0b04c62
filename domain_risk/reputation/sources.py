"""
Reputation sources - outbound verdict lookups.

============================================================
PURPOSE
============================================================
One class per external feed. Every source answers a single
question for a registrable domain: is it known to be malicious?

All sources MUST:
- Finish within their timeout (the caller also enforces it)
- Raise ExternalLookupFailure on any transport or payload error
- Never cache on their own (ReputationCache does that)

============================================================
SOURCES
============================================================
- GoogleSafeBrowsingSource: v4 threatMatches:find
- PhishTankSource: checkurl form POST
- OpenPhishSource: hourly bulk feed via FeedCache
- TlsProbe: HEAD request over HTTPS; handshake failure = invalid

============================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from ..clock import ClockProtocol
from ..config import ApiKeysConfig, TLS_CERTIFICATE_SOURCE
from ..exceptions import ExternalLookupFailure
from .feeds import FeedCache


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 3.0
USER_AGENT = "DomainRiskEngine/1.0"


@dataclass(frozen=True)
class SourceVerdict:
    """Answer of one source. ``confidence`` is optional; callers default it."""

    malicious: bool
    confidence: Optional[float] = None


# ============================================================
# BASE
# ============================================================


class ReputationSource(ABC):
    """
    Abstract base for outbound reputation lookups.

    Owns (or borrows) an aiohttp session. A borrowed session is never
    closed by the source.
    """

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._timeout = timeout

    @property
    @abstractmethod
    def name(self) -> str:
        """Source name as it appears in configuration."""
        pass

    @abstractmethod
    async def check(self, domain: str) -> SourceVerdict:
        """
        Look ``domain`` up.

        Raises:
            ExternalLookupFailure: On any error
        """
        pass

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # --------------------------------------------------------
    # HTTP HELPERS
    # --------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers={"User-Agent": USER_AGENT},
            )
            self._owns_session = True
        return self._session

    async def _request_json(
        self,
        method: str,
        url: str,
        domain: str,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """Make HTTP request and decode a JSON body."""
        session = await self._get_session()
        try:
            async with session.request(method, url, **kwargs) as response:
                if response.status >= 400:
                    raise ExternalLookupFailure(
                        f"HTTP {response.status}",
                        source=self.name,
                        domain=domain,
                        status_code=response.status,
                    )
                payload = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise ExternalLookupFailure(
                f"Connection error: {e}",
                source=self.name,
                domain=domain,
                cause=e,
            ) from e
        except ValueError as e:
            raise ExternalLookupFailure(
                f"Invalid JSON payload: {e}",
                source=self.name,
                domain=domain,
                cause=e,
            ) from e

        if not isinstance(payload, dict):
            raise ExternalLookupFailure(
                "Unexpected payload shape",
                source=self.name,
                domain=domain,
            )
        return payload

    @staticmethod
    def _confidence(payload: Dict[str, Any]) -> Optional[float]:
        value = payload.get("confidence")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        return None


# ============================================================
# GOOGLE SAFE BROWSING
# ============================================================


class GoogleSafeBrowsingSource(ReputationSource):
    """Google Safe Browsing v4 Lookup API."""

    ENDPOINT = "https://safebrowsing.googleapis.com/v4/threatMatches:find"
    THREAT_TYPES = ["MALWARE", "SOCIAL_ENGINEERING"]

    def __init__(self, api_key: Optional[str], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._api_key = api_key

    @property
    def name(self) -> str:
        return "Google Safe Browsing"

    def _build_body(self, domain: str) -> Dict[str, Any]:
        return {
            "client": {"clientId": "domain-risk-engine", "clientVersion": "1.0"},
            "threatInfo": {
                "threatTypes": self.THREAT_TYPES,
                "platformTypes": ["ANY_PLATFORM"],
                "threatEntryTypes": ["URL"],
                "threatEntries": [{"url": f"https://{domain}"}],
            },
        }

    async def check(self, domain: str) -> SourceVerdict:
        if not self._api_key:
            raise ExternalLookupFailure("API key not configured", source=self.name, domain=domain)

        payload = await self._request_json(
            "POST",
            self.ENDPOINT,
            domain,
            params={"key": self._api_key},
            json=self._build_body(domain),
        )
        matches = payload.get("matches") or []
        malicious = len(matches) > 0 or bool(payload.get("malicious"))
        return SourceVerdict(malicious=malicious, confidence=self._confidence(payload))


# ============================================================
# PHISHTANK
# ============================================================


class PhishTankSource(ReputationSource):
    """PhishTank checkurl API. Listed means in_database and valid."""

    ENDPOINT = "https://checkurl.phishtank.com/checkurl/"

    def __init__(self, api_key: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._api_key = api_key

    @property
    def name(self) -> str:
        return "PhishTank"

    async def check(self, domain: str) -> SourceVerdict:
        form = {"url": f"https://{domain}", "format": "json"}
        if self._api_key:
            form["app_key"] = self._api_key

        payload = await self._request_json("POST", self.ENDPOINT, domain, data=form)
        results = payload.get("results") or {}
        listed = bool(results.get("in_database")) and bool(results.get("valid"))
        return SourceVerdict(
            malicious=listed or bool(payload.get("malicious")),
            confidence=self._confidence(payload),
        )


# ============================================================
# OPENPHISH
# ============================================================


class OpenPhishSource(ReputationSource):
    """
    OpenPhish community feed.

    The feed is downloaded into a FeedCache and refreshed hourly;
    individual checks are set lookups.
    """

    FEED_URL = "https://openphish.com/feed.txt"

    def __init__(
        self,
        feed: Optional[FeedCache] = None,
        clock: Optional[ClockProtocol] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.feed = feed or FeedCache(self.name, self._download, clock=clock)

    @property
    def name(self) -> str:
        return "OpenPhish"

    async def _download(self) -> List[str]:
        session = await self._get_session()
        try:
            async with session.get(self.FEED_URL) as response:
                if response.status >= 400:
                    raise ExternalLookupFailure(
                        f"HTTP {response.status}",
                        source=self.name,
                        status_code=response.status,
                    )
                body = await response.text()
        except aiohttp.ClientError as e:
            raise ExternalLookupFailure(f"Connection error: {e}", source=self.name, cause=e) from e
        return body.splitlines()

    async def check(self, domain: str) -> SourceVerdict:
        listed = await self.feed.contains(domain)
        return SourceVerdict(malicious=listed)


# ============================================================
# TLS PROBE
# ============================================================


class TlsProbe(ReputationSource):
    """
    Transport validity probe.

    Any HTTP response over HTTPS counts as a valid handshake; TLS,
    connection or timeout errors count as invalid. The probe itself
    never fails, it only reports.
    """

    @property
    def name(self) -> str:
        return TLS_CERTIFICATE_SOURCE

    async def probe(self, domain: str) -> bool:
        session = await self._get_session()
        try:
            async with session.head(f"https://{domain}", allow_redirects=False):
                return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"[{self.name}] Probe failed for {domain}: {e}")
            return False

    async def check(self, domain: str) -> SourceVerdict:
        valid = await self.probe(domain)
        return SourceVerdict(malicious=not valid, confidence=1.0 if valid else 0.9)


# ============================================================
# FACTORY
# ============================================================


def build_default_sources(
    api_keys: ApiKeysConfig,
    session: Optional[aiohttp.ClientSession] = None,
    timeout: float = DEFAULT_TIMEOUT,
    clock: Optional[ClockProtocol] = None,
) -> Dict[str, ReputationSource]:
    """
    Construct the built-in feeds keyed by configured source name.

    Returns:
        {source_name: ReputationSource}
    """
    sources: List[ReputationSource] = [
        GoogleSafeBrowsingSource(api_keys.google_safe_browsing, session=session, timeout=timeout),
        PhishTankSource(api_keys.phishtank, session=session, timeout=timeout),
        OpenPhishSource(clock=clock, session=session, timeout=timeout),
    ]
    return {source.name: source for source in sources}


__all__ = [
    "DEFAULT_TIMEOUT",
    "SourceVerdict",
    "ReputationSource",
    "GoogleSafeBrowsingSource",
    "PhishTankSource",
    "OpenPhishSource",
    "TlsProbe",
    "build_default_sources",
]
