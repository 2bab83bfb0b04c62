"""
Bulk reputation feed cache.

Holds a downloaded list of known-bad URLs (OpenPhish style, one URL
per line) and refreshes it at most once per ``refresh_interval``.
A failed refresh keeps serving the previous copy.
"""

import asyncio
import logging
from typing import Awaitable, Callable, FrozenSet, Iterable, Optional
from urllib.parse import urlsplit

from ..clock import ClockProtocol, SystemClock
from ..exceptions import ExternalLookupFailure


logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL = 3600.0  # 1 hour


class FeedCache:
    """
    In-memory snapshot of a URL feed.

    Args:
        name: Feed name used in logs and errors
        loader: Coroutine factory returning the feed lines
        refresh_interval: Seconds between refreshes
        clock: Time source
    """

    def __init__(
        self,
        name: str,
        loader: Callable[[], Awaitable[Iterable[str]]],
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        clock: Optional[ClockProtocol] = None,
    ):
        self.name = name
        self._loader = loader
        self._refresh_interval = refresh_interval
        self._clock = clock or SystemClock()

        self._urls: FrozenSet[str] = frozenset()
        self._hosts: FrozenSet[str] = frozenset()
        self._last_refresh: Optional[float] = None
        # created on first refresh, inside the running loop
        self._lock: Optional[asyncio.Lock] = None

    @property
    def size(self) -> int:
        return len(self._urls)

    @property
    def last_refresh(self) -> Optional[float]:
        return self._last_refresh

    def is_stale(self) -> bool:
        if self._last_refresh is None or not self._urls:
            return True
        return self._clock.seconds_since(self._last_refresh) >= self._refresh_interval

    async def refresh(self, force: bool = False) -> None:
        """
        Reload the feed if stale.

        Concurrent callers wait for a single reload.

        Raises:
            ExternalLookupFailure: When the reload fails and no previous
                copy exists
        """
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if not force and not self.is_stale():
                return
            try:
                lines = await self._loader()
            except Exception as e:
                if self._urls:
                    logger.warning(f"[{self.name}] Feed refresh failed, serving stale copy: {e}")
                    return
                raise ExternalLookupFailure(
                    f"Feed download failed: {e}",
                    source=self.name,
                    cause=e,
                ) from e

            urls = set()
            hosts = set()
            for line in lines:
                entry = line.strip()
                if not entry or entry.startswith("#"):
                    continue
                urls.add(entry.rstrip("/"))
                host = (urlsplit(entry).hostname or "").lower()
                if host:
                    hosts.add(host)

            self._urls = frozenset(urls)
            self._hosts = frozenset(hosts)
            self._last_refresh = self._clock.timestamp()
            logger.info(f"[{self.name}] Feed refreshed: {len(self._urls)} entries")

    async def contains(self, domain: str) -> bool:
        """
        True when the feed lists ``domain``.

        Matches the bare-origin URL or any feed URL whose host is the
        domain itself or its ``www`` alias.
        """
        await self.refresh()
        domain = domain.lower()
        if f"https://{domain}" in self._urls or f"http://{domain}" in self._urls:
            return True
        return domain in self._hosts or f"www.{domain}" in self._hosts


__all__ = ["DEFAULT_REFRESH_INTERVAL", "FeedCache"]
