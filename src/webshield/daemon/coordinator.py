"""
Request coordinator: the only path from the delivery process to the engine.

Concurrent requests for the same key share one in-flight fetch. Failed
fetches are retried with exponential backoff unless the error is terminal.
Successful fetches populate the pinned cache (hot-list hosts) or the
bounded cache (everything else).
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..exceptions import EngineError, FetchExhaustedError, NonRetryableFetchError
from ..models import RuleSet, RuleSource, get_hostname
from ..retry import RetryPolicy
from .cache import PinnedCache, RuleCache

if TYPE_CHECKING:
    from ..config import ShieldConfig
    from ..engine.bridge import EngineBridge

logger = logging.getLogger(__name__)


@dataclass
class CoordinatorStats:
    pinned_hits: int = 0
    cache_hits: int = 0
    misses: int = 0
    joined: int = 0
    skipped: int = 0
    fetches: int = 0
    failures: int = 0
    fetch_time: float = 0.0
    successful_fetches: int = 0

    def as_dict(self) -> dict[str, Any]:
        average = self.fetch_time / self.successful_fetches if self.successful_fetches else 0.0
        return {
            "pinned_hits": self.pinned_hits,
            "cache_hits": self.cache_hits,
            "misses": self.misses,
            "joined": self.joined,
            "skipped": self.skipped,
            "fetches": self.fetches,
            "failures": self.failures,
            "average_fetch_time": average,
        }


class RuleCoordinator:
    """Resolves URLs to rule sets through the caches and the engine bridge."""

    def __init__(
        self,
        bridge: EngineBridge,
        cache: RuleCache | None = None,
        pinned: PinnedCache | None = None,
        retry_policy: RetryPolicy | None = None,
        max_parallel_fetches: int = 6,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._bridge = bridge
        self.cache = cache if cache is not None else RuleCache()
        self.pinned = pinned if pinned is not None else PinnedCache()
        self._policy = retry_policy or RetryPolicy()
        self._semaphore = asyncio.Semaphore(max_parallel_fetches)
        self._sleep = sleep
        self._pending: dict[str, asyncio.Task[RuleSet]] = {}
        self._stats = CoordinatorStats()
        self._engine_timestamp: Any = None
        # Bumped by invalidate(); fetches started earlier are not cached
        self._generation = 0

    @classmethod
    def from_config(cls, bridge: EngineBridge, config: ShieldConfig) -> RuleCoordinator:
        return cls(
            bridge,
            cache=RuleCache(max_size=config.cache_max_size, ttl=config.cache_ttl),
            pinned=PinnedCache(config.pinned_hosts),
            retry_policy=config.retry_policy(),
            max_parallel_fetches=config.max_parallel_fetches,
        )

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def resolve(self, url: str) -> RuleSet:
        """Get the rule set for a URL.

        Raises:
            NonRetryableFetchError: A terminal engine error.
            FetchExhaustedError: Every attempt failed with a transient error.
        """
        hostname = get_hostname(url)
        if hostname is None:
            self._stats.skipped += 1
            return RuleSet.empty(RuleSource.SKIPPED)

        is_pinned = self.pinned.allows(hostname)
        if is_pinned:
            rule_set = self.pinned.get(hostname)
            if rule_set is not None:
                self._stats.pinned_hits += 1
                logger.debug("Pinned cache hit: %s", hostname)
                return rule_set

        rule_set = self.cache.get(url)
        if rule_set is not None:
            self._stats.cache_hits += 1
            logger.debug("Cache hit: %s", url[:100])
            return rule_set

        key = hostname if is_pinned else url
        task = self._pending.get(key)
        if task is not None:
            self._stats.joined += 1
            logger.debug("Joining in-flight fetch for %s", key[:100])
        else:
            self._stats.misses += 1
            task = asyncio.create_task(self._fetch(url, hostname, is_pinned))
            self._pending[key] = task
            task.add_done_callback(functools.partial(self._settle, key))

        # A cancelled caller must not take the shared fetch down with it
        return await asyncio.shield(task)

    def _settle(self, key: str, task: asyncio.Task[RuleSet]) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Fetch for %s settled with error: %s", key[:100], task.exception())

    async def _fetch(self, url: str, hostname: str, is_pinned: bool) -> RuleSet:
        generation = self._generation
        last_error: EngineError | None = None

        for attempt in range(1, self._policy.max_attempts + 1):
            started = time.monotonic()
            try:
                async with self._semaphore:
                    self._stats.fetches += 1
                    payload = await self._bridge.fetch_rules(url)
            except EngineError as e:
                last_error = e
                if not e.retryable:
                    self._stats.failures += 1
                    logger.error("Non-retryable engine error for %s: %s", url[:100], e)
                    raise NonRetryableFetchError(str(e)) from e
                if self._policy.is_final(attempt):
                    break
                delay = self._policy.delay_for(attempt)
                logger.warning(
                    "Attempt %d/%d for %s failed: %s. Retrying in %.0fms",
                    attempt,
                    self._policy.max_attempts,
                    url[:100],
                    e,
                    delay * 1000,
                )
                await self._sleep(delay)
                continue

            elapsed = time.monotonic() - started
            self._stats.fetch_time += elapsed
            self._stats.successful_fetches += 1

            rule_set = RuleSet.from_payload(payload.data, source=RuleSource.FRESH_FETCH, url=url)
            logger.info(
                "Fetched %d rules for %s in %.0fms (attempt %d, verbose=%s)",
                rule_set.rule_count,
                url[:100],
                elapsed * 1000,
                attempt,
                payload.verbose,
            )

            if generation != self._generation:
                logger.debug("Rules changed during fetch, not caching %s", url[:100])
                return rule_set

            self._check_engine_timestamp(payload.data.get("engineTimestamp"))
            if is_pinned:
                self.pinned.set(hostname, rule_set.with_source(RuleSource.PINNED_CACHE))
            else:
                self.cache.set(url, rule_set.with_source(RuleSource.CACHE))
            return rule_set

        self._stats.failures += 1
        logger.error(
            "Giving up on %s after %d attempts: %s",
            url[:100],
            self._policy.max_attempts,
            last_error,
        )
        raise FetchExhaustedError(url, self._policy.max_attempts, last_error)

    def _check_engine_timestamp(self, timestamp: Any) -> None:
        if timestamp is None:
            return
        if self._engine_timestamp is not None and timestamp != self._engine_timestamp:
            logger.info("Engine timestamp changed, clearing %d cached rule sets", len(self.cache))
            self.cache.clear()
        self._engine_timestamp = timestamp

    def invalidate(self) -> None:
        """Drop every cached rule set after an engine update.

        Pinned entries are dropped too; the preloader re-warms them.
        """
        logger.info(
            "Invalidating caches (%d cached, %d pinned)", len(self.cache), len(self.pinned)
        )
        self._generation += 1
        self.cache.clear()
        self.pinned.clear()

    def get_stats(self) -> dict[str, Any]:
        stats = self._stats.as_dict()
        stats.update(
            cache_size=len(self.cache),
            pinned_size=len(self.pinned),
            pending=len(self._pending),
        )
        return stats

    async def close(self) -> None:
        """Cancel in-flight fetches."""
        tasks = list(self._pending.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()
