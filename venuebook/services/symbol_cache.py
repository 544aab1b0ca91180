"""
SymbolCache - owned cache of venue instrument lists.

The cache is an ordinary object handed to whoever needs symbol lists; there
is no module-level instance. Entries expire after `ttl_seconds` and can be
invalidated explicitly, e.g. after a venue reconnects.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from ..models.market_data import VenueSymbol

logger = logging.getLogger(__name__)

SymbolLoader = Callable[[str], Awaitable[List[VenueSymbol]]]


@dataclass
class _CacheEntry:
    symbols: List[VenueSymbol]
    loaded_at: float


class SymbolCache:
    """
    Per-venue cache of instrument lists with TTL invalidation.

    Usage:
        from venuebook.clients.instruments import load_instruments

        cache = SymbolCache(load_instruments, ttl_seconds=300)
        symbols = await cache.get("OKX")

    Attributes:
        ttl_seconds: Entry lifetime; None keeps entries until invalidated
    """

    def __init__(
        self,
        loader: SymbolLoader,
        ttl_seconds: Optional[float] = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.

        Args:
            loader: Async function returning the instrument list for a venue
            ttl_seconds: Entry lifetime in seconds (None = no expiry)
            clock: Monotonic time source, replaceable in tests

        Raises:
            ValueError: If ttl_seconds <= 0
        """
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")

        self.ttl_seconds = ttl_seconds
        self._loader = loader
        self._clock = clock
        self._entries: Dict[str, _CacheEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self.hits = 0
        self.misses = 0

    def _is_fresh(self, entry: _CacheEntry) -> bool:
        if self.ttl_seconds is None:
            return True
        return self._clock() - entry.loaded_at < self.ttl_seconds

    async def get(self, venue: str) -> List[VenueSymbol]:
        """
        Instrument list for a venue, loading it on a miss or after expiry.

        Concurrent callers for the same venue share one load. Loader errors
        propagate and nothing is cached.
        """
        entry = self._entries.get(venue)
        if entry is not None and self._is_fresh(entry):
            self.hits += 1
            return entry.symbols

        lock = self._locks.setdefault(venue, asyncio.Lock())
        async with lock:
            # Another caller may have loaded while we waited
            entry = self._entries.get(venue)
            if entry is not None and self._is_fresh(entry):
                self.hits += 1
                return entry.symbols

            self.misses += 1
            symbols = list(await self._loader(venue))
            self._entries[venue] = _CacheEntry(symbols=symbols, loaded_at=self._clock())
            logger.info(f"Loaded {len(symbols)} symbols for {venue}")
            return symbols

    def peek(self, venue: str) -> Optional[List[VenueSymbol]]:
        """Cached list if present and fresh, without loading."""
        entry = self._entries.get(venue)
        if entry is None or not self._is_fresh(entry):
            return None
        return entry.symbols

    def invalidate(self, venue: Optional[str] = None) -> None:
        """Drop one venue's entry, or every entry when venue is None."""
        if venue is None:
            self._entries.clear()
        else:
            self._entries.pop(venue, None)
        logger.debug(f"Symbol cache invalidated: {venue or 'all venues'}")

    def __repr__(self) -> str:
        return (
            f"SymbolCache(venues={sorted(self._entries)}, "
            f"hits={self.hits}, misses={self.misses})"
        )
