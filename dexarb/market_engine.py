# dexarb/market_engine.py
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import aiohttp

from .config import CacheConfig
from .errors import QuoteFetchError
from .gateway import QuoteSource
from .models import Quote, VenueState, VenueStatus


class VenueFeed(ABC):
    """A source of base-quoted prices for one venue."""
    def __init__(self, venue: str, base_symbol: str = "ADA"):
        self.venue = venue
        self.base_symbol = base_symbol

    @abstractmethod
    async def fetch(self, session: aiohttp.ClientSession, now: float) -> List[Quote]:
        ...


class HttpVenueFeed(VenueFeed):
    """
    Reads a normalized JSON feed: a list of {"symbol", "price", "liquidity"}
    objects, prices in base-asset units per token.
    """
    def __init__(self, venue: str, url: str, base_symbol: str = "ADA", max_pairs: int = 50):
        super().__init__(venue, base_symbol)
        self.url = url
        self.max_pairs = max_pairs

    async def fetch(self, session: aiohttp.ClientSession, now: float) -> List[Quote]:
        async with session.get(self.url, headers={"Accept": "application/json"}) as resp:
            if resp.status != 200:
                raise QuoteFetchError(f"{self.venue}: HTTP {resp.status}")
            data = await resp.json()

        if not isinstance(data, list):
            raise QuoteFetchError(f"{self.venue}: expected a list, got {type(data).__name__}")

        quotes = []
        for item in data[:self.max_pairs]:
            symbol = item.get("symbol")
            try:
                price = float(item.get("price") or 0)
                depth = float(item.get("liquidity") or 0)
            except (TypeError, ValueError):
                continue
            if not symbol or price <= 0 or price == float("inf"):
                continue
            quotes.append(Quote(self.venue, self.base_symbol, symbol, price, depth, now))

        if not quotes:
            raise QuoteFetchError(f"{self.venue}: no prices parsed")
        return quotes


class QuoteCache:
    """
    Per-instance cache of the last fetch cycle.

    - A full snapshot is reused while younger than `ttl_seconds`.
    - When a venue fails, its last good quotes are served tagged STALE while
      younger than `stale_after_seconds`, and dropped after that.
    """
    def __init__(self, config: Optional[CacheConfig] = None):
        self.config = config or CacheConfig()
        self._snapshot: Optional[Tuple[List[Quote], List[VenueStatus], float]] = None
        self._last_good: Dict[str, Tuple[List[Quote], float]] = {}

    def fresh_snapshot(self, now: float) -> Optional[Tuple[List[Quote], List[VenueStatus]]]:
        if self._snapshot is None:
            return None
        quotes, statuses, taken_at = self._snapshot
        if now - taken_at < self.config.ttl_seconds:
            return quotes, statuses
        return None

    def store_snapshot(self, quotes: List[Quote], statuses: List[VenueStatus], now: float) -> None:
        self._snapshot = (quotes, statuses, now)

    def invalidate(self) -> None:
        self._snapshot = None

    def record_success(self, venue: str, quotes: List[Quote], now: float,
                       latency_ms: Optional[float] = None) -> VenueStatus:
        self._last_good[venue] = (quotes, now)
        return VenueStatus(venue, VenueState.LIVE, now, len(quotes), latency_ms)

    def record_failure(self, venue: str, now: float) -> Tuple[List[Quote], VenueStatus]:
        entry = self._last_good.get(venue)
        if entry is not None and now - entry[1] < self.config.stale_after_seconds:
            quotes, fetched_at = entry
            return quotes, VenueStatus(venue, VenueState.STALE, fetched_at, len(quotes))

        last_update = entry[1] if entry is not None else 0.0
        self._last_good.pop(venue, None)
        return [], VenueStatus(venue, VenueState.STALE, last_update, 0)


class MarketEngine(QuoteSource):
    """
    Fans out to every venue feed concurrently and merges the results.
    A failing venue degrades its own status; the call as a whole never fails.
    """
    def __init__(self, feeds: Sequence[VenueFeed], cache: Optional[QuoteCache] = None,
                 logger: Optional[logging.Logger] = None, timeout_seconds: float = 5.0,
                 clock: Callable[[], float] = time.time):
        self.feeds = list(feeds)
        self.cache = cache or QuoteCache()
        self.logger = logger or logging.getLogger(__name__)
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self._session: Optional[aiohttp.ClientSession] = None
        self._owns_session = False

    async def initialize(self, session: Optional[aiohttp.ClientSession] = None):
        self._owns_session = session is None
        self._session = session or aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
        )
        self.logger.info(f"📡 {len(self.feeds)} venue feeds ready")

    async def _timed_fetch(self, feed: VenueFeed, now: float) -> Tuple[List[Quote], float]:
        start = time.perf_counter()
        quotes = await feed.fetch(self._session, now)
        return quotes, (time.perf_counter() - start) * 1000

    async def fetch_all_quotes(self) -> Tuple[List[Quote], List[VenueStatus]]:
        now = self.clock()
        cached = self.cache.fresh_snapshot(now)
        if cached is not None:
            return cached

        if self._session is None:
            await self.initialize()

        results = await asyncio.gather(
            *(self._timed_fetch(feed, now) for feed in self.feeds),
            return_exceptions=True,
        )

        quotes: List[Quote] = []
        statuses: List[VenueStatus] = []
        for feed, res in zip(self.feeds, results):
            if isinstance(res, Exception):
                self.logger.warning(f"   ⚠️ {feed.venue:<12} | feed failed: {res}")
                kept, status = self.cache.record_failure(feed.venue, now)
            else:
                kept, latency_ms = res
                status = self.cache.record_success(feed.venue, kept, now, latency_ms)
            quotes.extend(kept)
            statuses.append(status)

        self.cache.store_snapshot(quotes, statuses, now)
        return quotes, statuses

    async def shutdown(self):
        """
        Gracefully closes the HTTP session.
        """
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None
