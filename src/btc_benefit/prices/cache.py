"""In-memory TTL cache for per-date BTC prices.

Keys are ISO dates ("YYYY-MM-DD"). An entry older than the TTL is dropped
the next time it is read, and stats() only reports live entries.
"""

import time
from collections.abc import Callable
from decimal import Decimal
from typing import Any

from btc_benefit.models import CachedPriceEntry


class PriceCache:
    """Date -> price map with a fixed time-to-live.

    Args:
        ttl_seconds: Lifetime of an entry (24h in production).
        clock: Wall-clock seconds source; injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 86_400,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CachedPriceEntry] = {}

    def get(self, key: str) -> Decimal | None:
        """Return the cached price, or None if missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._is_expired(entry):
            del self._entries[key]
            return None
        return entry.price

    def set(self, key: str, price: Decimal) -> None:
        self._entries[key] = CachedPriceEntry(price=price, timestamp=self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def purge_expired(self) -> int:
        expired = [key for key, entry in self._entries.items() if self._is_expired(entry)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def stats(self) -> dict[str, Any]:
        self.purge_expired()
        return {"size": len(self._entries), "keys": sorted(self._entries)}

    def __len__(self) -> int:
        self.purge_expired()
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def _is_expired(self, entry: CachedPriceEntry) -> bool:
        return self._clock() - entry.timestamp >= self._ttl
