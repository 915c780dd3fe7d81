"""
Integration with the ExtendedCss selector library.

The library itself is opaque: it is loaded into the page (from
``library_path`` or by the page environment) and driven through its
``ExtendedCss`` constructor.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from playwright.async_api import Page

logger = logging.getLogger(__name__)

HIDE_DECLARATION = "{ display: none !important; }"

IS_AVAILABLE_JS = "() => typeof window.ExtendedCss === 'function'"

# Returns the number of selectors matching at least one element
APPLY_JS = """
(rules) => {
    const ExtendedCss = window.ExtendedCss;
    if (typeof ExtendedCss.init === 'function') {
        ExtendedCss.init();
    }
    const instance = new ExtendedCss({ cssRules: rules });
    instance.apply();
    (window.__wsaExtendedCss = window.__wsaExtendedCss || []).push(instance);

    let matched = 0;
    for (const rule of rules) {
        const selector = rule.split('{')[0].trim();
        try {
            const found = typeof ExtendedCss.query === 'function'
                ? ExtendedCss.query(selector)
                : document.querySelectorAll(selector);
            if (found && found.length > 0) {
                matched++;
            }
        } catch (e) {
            // Selector only the library understands and cannot be queried
        }
    }
    return matched;
}
"""

DISPOSE_JS = """
() => {
    const instances = window.__wsaExtendedCss || [];
    let disposed = 0;
    for (const instance of instances) {
        try {
            if (typeof instance.dispose === 'function') {
                instance.dispose();
                disposed++;
            }
        } catch (e) {}
    }
    window.__wsaExtendedCss = [];
    return disposed;
}
"""


def format_extended_rules(rules: Iterable[str]) -> list[str]:
    """Drop blank and ``!`` comment entries; give bare selectors a hide rule."""
    formatted = []
    for rule in rules:
        rule = rule.strip() if isinstance(rule, str) else ""
        if not rule or rule.startswith("!"):
            continue
        formatted.append(rule if "{" in rule else f"{rule} {HIDE_DECLARATION}")
    return formatted


class ExtendedCssIntegration:
    """Applies extended CSS rules to one page and disposes them on teardown."""

    def __init__(self, page: Page, library_path: str | Path | None = None) -> None:
        self._page = page
        self._library_path = Path(library_path) if library_path else None
        self.applied_batches = 0

    async def _ensure_library(self) -> bool:
        if await self._page.evaluate(IS_AVAILABLE_JS):
            return True
        if self._library_path is None:
            return False
        if not self._library_path.exists():
            logger.warning("ExtendedCss library not found: %s", self._library_path)
            return False
        await self._page.add_script_tag(path=str(self._library_path))
        return bool(await self._page.evaluate(IS_AVAILABLE_JS))

    async def apply(self, rules: list[str]) -> int | None:
        """Apply already formatted rules.

        Returns:
            Number of selectors matching at least one element, or None when
            the library is not available in the page.
        """
        if not rules:
            return 0
        if not await self._ensure_library():
            logger.warning("ExtendedCss library is not available, skipping %d rules", len(rules))
            return None

        matched = await self._page.evaluate(APPLY_JS, rules)
        self.applied_batches += 1
        logger.debug("ExtendedCss matched %d/%d selectors", matched, len(rules))
        return int(matched)

    async def dispose(self) -> int:
        """Dispose every instance created in the current document."""
        if not self.applied_batches:
            return 0
        disposed = await self._page.evaluate(DISPOSE_JS)
        self.applied_batches = 0
        logger.debug("Disposed %d ExtendedCss instance(s)", disposed)
        return int(disposed)
