"""
Backoff policy and error classification shared by the request coordinator
and the page-side messaging gateway.
"""

from __future__ import annotations

import random
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

# Engine-side failures that will not go away by asking again
NON_RETRYABLE_ENGINE_MESSAGES = (
    "Native host not connected",
    "Engine not connected",
    "Engine not initialized",
    "Invalid URL",
    "JSON parse error",
    "context invalidated",
)

# Gateway-side failures that abort the page's request immediately
NON_RETRYABLE_GATEWAY_MESSAGES = (
    "Native host not connected",
    "Engine not connected",
    "Invalid URL",
    "URL is required",
    "Native host request failed",
    "JSON parse error",
    "Could not establish connection. Receiving end does not exist",
    "Extension context invalidated",
)


def matches_any(message: str, phrases: Iterable[str]) -> bool:
    """Check whether an error message contains any of the given phrases."""
    return any(phrase in message for phrase in phrases)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with additive jitter.

    Attempt ``n`` (1-based) that fails waits ``base_delay * 2 ** (n - 1)``
    seconds plus up to ``max_jitter`` seconds before attempt ``n + 1``.
    """

    max_attempts: int = 3
    base_delay: float = 0.15
    max_jitter: float = 0.1
    rng: Callable[[], float] = field(default=random.random, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt."""
        return self.base_delay * 2 ** (attempt - 1) + self.rng() * self.max_jitter

    def is_final(self, attempt: int) -> bool:
        return attempt >= self.max_attempts
