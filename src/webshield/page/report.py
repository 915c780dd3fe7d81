"""
Per-page application report.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..models import CATEGORIES

logger = logging.getLogger(__name__)


@dataclass
class CategoryStats:
    attempted: int = 0
    succeeded: int = 0
    skipped: int = 0  # groups already applied earlier in this page's lifetime

    @property
    def rate(self) -> float:
        return self.succeeded / self.attempted if self.attempted else 0.0


@dataclass
class ApplicationReport:
    """Attempted and succeeded counts per rule category for one pass."""

    css_inject: CategoryStats = field(default_factory=CategoryStats)
    css_extended: CategoryStats = field(default_factory=CategoryStats)
    scripts: CategoryStats = field(default_factory=CategoryStats)
    scriptlets: CategoryStats = field(default_factory=CategoryStats)
    url: str = ""
    duration: float = 0.0
    error: str | None = None

    def category(self, name: str) -> CategoryStats:
        """Look up a category by its wire name (``cssInject`` etc.)."""
        attributes = {
            "cssInject": self.css_inject,
            "cssExtended": self.css_extended,
            "scripts": self.scripts,
            "scriptlets": self.scriptlets,
        }
        try:
            return attributes[name]
        except KeyError:
            raise KeyError(f"Unknown rule category: {name}") from None

    def totals(self) -> CategoryStats:
        total = CategoryStats()
        for name in CATEGORIES:
            stats = self.category(name)
            total.attempted += stats.attempted
            total.succeeded += stats.succeeded
        return total

    def summary(self) -> dict[str, Any]:
        totals = self.totals()
        return {
            "url": self.url,
            "duration_ms": round(self.duration * 1000, 1),
            "error": self.error,
            "total": {
                "attempted": totals.attempted,
                "succeeded": totals.succeeded,
                "rate": round(totals.rate, 3),
            },
            "categories": {
                name: {
                    "attempted": self.category(name).attempted,
                    "succeeded": self.category(name).succeeded,
                    "rate": round(self.category(name).rate, 3),
                }
                for name in CATEGORIES
            },
        }

    def log_summary(self) -> None:
        totals = self.totals()
        logger.info(
            "Applied %d/%d rules to %s in %.1fms",
            totals.succeeded,
            totals.attempted,
            self.url[:100] or "page",
            self.duration * 1000,
        )
        for name in CATEGORIES:
            stats = self.category(name)
            if stats.attempted:
                logger.debug(
                    "  %s: %d/%d (%.0f%%)", name, stats.succeeded, stats.attempted, stats.rate * 100
                )
        if self.error:
            logger.error("Rule application for %s failed: %s", self.url[:100], self.error)
