"""
Decision cache for evaluated flags.

Holds per-tenant boolean decisions with a per-entry TTL. Expiry is lazy:
entries are only checked, and evicted, when they are read.
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .clock import SystemTimeSource, TimeSource

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]

DEFAULT_TTL_SECONDS = 300


@dataclass(frozen=True)
class CacheEntry:
    """Immutable cached decision."""
    value: bool
    timestamp: int  # ms at write
    ttl_seconds: int

    def is_expired(self, now_ms: int) -> bool:
        """An entry stays valid until the clock moves strictly past its deadline."""
        return now_ms > self.timestamp + self.ttl_seconds * 1000


class LRUEvictionPolicy:
    """Capacity bound for the cache, evicting the least recently used key.

    Stale keys that are never read again would otherwise live until
    invalidated; this caps how many can accumulate.
    """

    def __init__(self, max_entries: int):
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self.max_entries = max_entries
        self._order: "OrderedDict[CacheKey, None]" = OrderedDict()

    def touch(self, key: CacheKey) -> None:
        self._order[key] = None
        self._order.move_to_end(key)

    def forget(self, key: CacheKey) -> None:
        self._order.pop(key, None)

    def clear(self) -> None:
        self._order.clear()

    def victims(self) -> List[CacheKey]:
        """Keys that must be dropped to get back under capacity."""
        overflow = len(self._order) - self.max_entries
        if overflow <= 0:
            return []
        return list(self._order.keys())[:overflow]


class DecisionCache:
    """Tenant + flag keyed boolean cache.

    Keys are the exact `(tenant_id, flag_key)` pair; no casing or whitespace
    normalization is applied. The cache never talks to the backing store.
    """

    def __init__(
        self,
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        time_source: Optional[TimeSource] = None,
        eviction_policy: Optional[LRUEvictionPolicy] = None,
    ):
        """Create an empty cache.

        Args:
            default_ttl_seconds: TTL used when `set` is called without one
            time_source: Clock used for write stamps and expiry checks
            eviction_policy: Optional capacity bound

        Raises:
            ValueError: If default_ttl_seconds is negative
        """
        if default_ttl_seconds < 0:
            raise ValueError("default_ttl_seconds cannot be negative")
        self.default_ttl_seconds = default_ttl_seconds
        self._time = time_source or SystemTimeSource()
        self._eviction = eviction_policy
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, tenant_id: str, flag_key: str) -> Optional[bool]:
        """Return the cached decision, or None when absent or expired."""
        key = (tenant_id, flag_key)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._time.now_ms()):
                del self._entries[key]
                if self._eviction:
                    self._eviction.forget(key)
                return None
            if self._eviction:
                self._eviction.touch(key)
            return entry.value

    def set(
        self,
        tenant_id: str,
        flag_key: str,
        value: bool,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        """Store a decision, replacing any previous entry for the key.

        Raises:
            ValueError: If ttl_seconds is negative
        """
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl < 0:
            raise ValueError("ttl_seconds cannot be negative")

        key = (tenant_id, flag_key)
        entry = CacheEntry(value=value, timestamp=self._time.now_ms(), ttl_seconds=ttl)
        with self._lock:
            self._entries[key] = entry
            if self._eviction:
                self._eviction.touch(key)
                for victim in self._eviction.victims():
                    self._entries.pop(victim, None)
                    self._eviction.forget(victim)
                    logger.debug("Evicted %s from decision cache", victim)

    def invalidate(self, tenant_id: str, flag_key: str) -> None:
        key = (tenant_id, flag_key)
        with self._lock:
            self._entries.pop(key, None)
            if self._eviction:
                self._eviction.forget(key)

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()
            if self._eviction:
                self._eviction.clear()

    def size(self) -> int:
        """Number of stored entries, including stale ones not yet read."""
        with self._lock:
            return len(self._entries)

    def keys(self) -> List[CacheKey]:
        """Keys whose entries are still live, without evicting anything."""
        now = self._time.now_ms()
        with self._lock:
            return [key for key, entry in self._entries.items() if not entry.is_expired(now)]
