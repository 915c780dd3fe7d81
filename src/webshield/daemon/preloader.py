"""
Warms the pinned cache for high-traffic hostnames.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .coordinator import RuleCoordinator

logger = logging.getLogger(__name__)


class Preloader:
    """Resolves a batch of hostnames through the coordinator.

    Every hostname settles on its own; one failure never blocks the others.
    """

    def __init__(self, coordinator: RuleCoordinator) -> None:
        self._coordinator = coordinator
        self._tasks: set[asyncio.Task[dict[str, bool]]] = set()

    async def _warm_one(self, hostname: str) -> bool:
        url = f"https://{hostname}/"
        try:
            rule_set = await self._coordinator.resolve(url)
        except Exception as e:
            logger.warning("Failed to preload rules for %s: %s", hostname, e)
            return False
        logger.debug("Preloaded %d rules for %s", rule_set.rule_count, hostname)
        return True

    async def warm(self, hostnames: Iterable[str]) -> dict[str, bool]:
        """Resolve every hostname concurrently.

        Returns:
            Hostname to success flag.
        """
        hosts = list(dict.fromkeys(hostnames))
        if not hosts:
            return {}

        outcomes = await asyncio.gather(
            *(self._warm_one(host) for host in hosts), return_exceptions=True
        )
        results = {host: outcome is True for host, outcome in zip(hosts, outcomes)}
        logger.info(
            "Preloaded %d/%d pinned hosts", sum(results.values()), len(results)
        )
        return results

    def warm_in_background(self, hostnames: Iterable[str]) -> asyncio.Task[dict[str, bool]]:
        """Schedule ``warm`` without waiting for it."""
        task = asyncio.create_task(self.warm(list(hostnames)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
