"""
REST loader for venue instrument lists.

The websocket feeds never list what a venue trades; each adapter names a
public REST endpoint for that. `load_instruments` matches SymbolCache's
loader signature, so the usual wiring is `SymbolCache(load_instruments)`.
"""

import asyncio
import logging
from typing import List, Optional

import requests

from ..models.market_data import VenueSymbol
from .venues import get_adapter

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10


def fetch_instruments(
    venue: str,
    timeout: float = DEFAULT_TIMEOUT,
    session: Optional[requests.Session] = None,
) -> List[VenueSymbol]:
    """
    Fetch and normalize a venue's instrument list (blocking).

    Args:
        venue: Venue name
        timeout: Request timeout in seconds
        session: Optional requests session to reuse connections

    Returns:
        Instruments in the venue's own listing order

    Raises:
        ValueError: If the venue is not supported
        requests.RequestException: On network errors or a non-2xx response
    """
    adapter = get_adapter(venue)
    http = session or requests
    response = http.get(adapter.instruments_url, timeout=timeout)
    response.raise_for_status()
    symbols = adapter.parse_instruments(response.json())
    logger.debug(f"{venue}: fetched {len(symbols)} instruments")
    return symbols


async def load_instruments(venue: str) -> List[VenueSymbol]:
    """Async wrapper around fetch_instruments, run in a worker thread."""
    return await asyncio.to_thread(fetch_instruments, venue)
