"""
Rule set caches owned by the request coordinator.

RuleCache is bounded and time-limited, keyed by URL. PinnedCache holds
rule sets for a fixed list of high-traffic hostnames and never expires.
"""

from __future__ import annotations

import itertools
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from ..models import RuleSet

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    key: str
    value: RuleSet
    inserted_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.inserted_at > self.ttl


class RuleCache:
    """LRU cache with a per-entry time to live.

    Expired entries are dropped lazily: on the ``get`` that finds them, or
    in a sweep when a new key arrives at capacity.
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        # Access order side table: key -> tick of last get/set
        self._access: dict[str, int] = {}
        self._ticks = itertools.count()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[arg-type]
        return entry is not None and not entry.is_expired(self._clock())

    def get(self, key: str) -> RuleSet | None:
        entry = self._entries.get(key)
        if entry is None:
            return None

        if entry.is_expired(self._clock()):
            logger.debug("Cache entry expired: %s", key[:100])
            self.delete(key)
            return None

        self._access[key] = next(self._ticks)
        return entry.value

    def set(self, key: str, value: RuleSet) -> None:
        if key not in self._entries and len(self._entries) >= self.max_size:
            self._purge_expired()
            if len(self._entries) >= self.max_size:
                self._evict_lru()

        self._entries[key] = CacheEntry(
            key=key, value=value, inserted_at=self._clock(), ttl=self.ttl
        )
        self._access[key] = next(self._ticks)

    def delete(self, key: str) -> bool:
        self._access.pop(key, None)
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()
        self._access.clear()

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            self.delete(key)
        if expired:
            logger.debug("Purged %d expired cache entries", len(expired))

    def _evict_lru(self) -> None:
        victim = min(self._access, key=self._access.__getitem__)
        self.delete(victim)
        logger.debug("Evicted least recently used entry: %s", victim[:100])


class PinnedCache:
    """Unbounded, non-expiring rule sets for an allow-list of hostnames."""

    def __init__(self, hosts: Iterable[str] = ()) -> None:
        self._hosts = frozenset(h.lower() for h in hosts)
        self._entries: dict[str, RuleSet] = {}

    @property
    def hosts(self) -> frozenset[str]:
        return self._hosts

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, hostname: object) -> bool:
        return hostname in self._entries

    def allows(self, hostname: str) -> bool:
        return hostname.lower() in self._hosts

    def get(self, hostname: str) -> RuleSet | None:
        return self._entries.get(hostname.lower())

    def set(self, hostname: str, value: RuleSet) -> None:
        if not self.allows(hostname):
            raise ValueError(f"{hostname} is not a pinned host")
        self._entries[hostname.lower()] = value

    def clear(self) -> None:
        self._entries.clear()
