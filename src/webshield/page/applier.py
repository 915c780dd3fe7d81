"""
Applies a delivered rule set to a page.

Categories run in order: plain CSS, extended CSS, scripts, scriptlets.
A failing category is recorded in the report and never stops the others.
Identical rule groups are applied once per page lifetime.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
import uuid
from typing import TYPE_CHECKING

from playwright.async_api import Error as PlaywrightError

from ..models import RuleSet, ScriptletInvocation
from ..scriptlets.runtime import ScriptletRuntime, ScriptletScope
from .extended_css import ExtendedCssIntegration, format_extended_rules
from .report import ApplicationReport, CategoryStats

if TYPE_CHECKING:
    from playwright.async_api import Page

logger = logging.getLogger(__name__)

CSS_SOURCE = "css-inject"
SCRIPT_SOURCE = "standard-script-combined"

# Tags the injected <style> and reports how many rules the browser parsed
CSS_RULE_COUNT_JS = """
(style, source) => {
    style.setAttribute('data-wsa-source', source);
    try {
        return style.sheet ? style.sheet.cssRules.length : 0;
    } catch (e) {
        return 0;
    }
}
"""

MARK_SOURCE_JS = "(el, source) => el.setAttribute('data-wsa-source', source)"

TAKE_RESULT_JS = """
(key) => {
    const result = window[key];
    delete window[key];
    return result === undefined ? null : result;
}
"""


def fingerprint(category: str, entries: list[str]) -> str:
    """Stable hash of a rule group."""
    digest = hashlib.sha256(category.encode())
    for entry in entries:
        digest.update(b"\0")
        digest.update(entry.encode())
    return digest.hexdigest()


def wrap_script(code: str, execution_id: str) -> str:
    """Guard a script block so its outcome lands in ``window[execution_id]``."""
    key = json.dumps(execution_id)
    return (
        "(function () {\n"
        "    try {\n"
        f"{code}\n;\n"
        f"        window[{key}] = {{ success: true }};\n"
        "    } catch (e) {\n"
        f"        window[{key}] = {{ success: false, error: String((e && e.message) || e) }};\n"
        "    }\n"
        "})();"
    )


class PageRuleApplier:
    """Applies rule sets to one page for the lifetime of its document."""

    def __init__(
        self,
        page: Page,
        runtime: ScriptletRuntime,
        extended_css: ExtendedCssIntegration | None = None,
        scope: ScriptletScope | None = None,
        verbose: bool = False,
    ) -> None:
        self._page = page
        self._runtime = runtime
        self._extended_css = extended_css or ExtendedCssIntegration(page)
        self.scope = scope or ScriptletScope(page)
        self._verbose = verbose
        self._applied: set[str] = set()

    @property
    def applied_groups(self) -> int:
        return len(self._applied)

    def _already_applied(self, key: str, stats: CategoryStats, label: str) -> bool:
        if key in self._applied:
            stats.skipped += 1
            logger.debug("%s group already applied, skipping", label)
            return True
        return False

    async def apply_all(self, rule_set: RuleSet, url: str = "") -> ApplicationReport:
        """Apply every category of ``rule_set``. Never raises."""
        report = ApplicationReport(url=url or str(getattr(self._page, "url", "") or ""))
        started = time.perf_counter()

        try:
            await self._apply_css(list(rule_set.css_inject), report.css_inject)
            await self._apply_extended_css(list(rule_set.css_extended), report.css_extended)
            await self._apply_scripts(list(rule_set.scripts), report.scripts)
            await self._apply_scriptlets(list(rule_set.scriptlets), report.scriptlets)
        except Exception as e:
            logger.exception("Unexpected error applying rules to %s", report.url[:100])
            report.error = str(e) or type(e).__name__

        report.duration = time.perf_counter() - started
        report.log_summary()
        return report

    async def _apply_css(self, styles: list[str], stats: CategoryStats) -> None:
        if not styles:
            return
        key = fingerprint("cssInject", styles)
        if self._already_applied(key, stats, "CSS"):
            return

        stats.attempted += len(styles)
        css_text = "\n".join(styles)
        if not css_text.strip():
            logger.debug("CSS content is empty after join")
            return

        try:
            style = await self._page.add_style_tag(content=css_text)
            self._applied.add(key)
            parsed = await style.evaluate(CSS_RULE_COUNT_JS, CSS_SOURCE)
            await style.dispose()
        except PlaywrightError as e:
            logger.error("Failed to inject CSS: %s", e)
            return

        stats.succeeded += min(int(parsed), len(styles))
        if parsed != len(styles):
            logger.warning("Browser parsed %d of %d CSS rules", parsed, len(styles))
        else:
            logger.debug("Applied %d CSS rules", parsed)

    async def _apply_extended_css(self, rules: list[str], stats: CategoryStats) -> None:
        formatted = format_extended_rules(rules)
        if not formatted:
            return
        key = fingerprint("cssExtended", formatted)
        if self._already_applied(key, stats, "Extended CSS"):
            return

        stats.attempted += len(formatted)
        try:
            matched = await self._extended_css.apply(formatted)
        except PlaywrightError as e:
            logger.error("Error applying extended CSS rules: %s", e)
            return

        if matched is None:
            return
        self._applied.add(key)
        stats.succeeded += matched

    async def _apply_scripts(self, scripts: list[str], stats: CategoryStats) -> None:
        if not scripts:
            return
        key = fingerprint("scripts", scripts)
        if self._already_applied(key, stats, "Script"):
            return

        stats.attempted += len(scripts)
        execution_id = f"wsa_script_{uuid.uuid4().hex}"
        try:
            tag = await self._page.add_script_tag(content=wrap_script("\n".join(scripts), execution_id))
            self._applied.add(key)
            await tag.evaluate(MARK_SOURCE_JS, SCRIPT_SOURCE)
            await tag.dispose()
            result = await self._page.evaluate(TAKE_RESULT_JS, execution_id)
        except PlaywrightError as e:
            logger.error("Failed to inject script block: %s", e)
            return

        if isinstance(result, dict) and result.get("success"):
            stats.succeeded += len(scripts)
            logger.debug("Applied script block of %d scripts", len(scripts))
        else:
            error = result.get("error") if isinstance(result, dict) else "script did not run"
            logger.warning("Script execution failed: %s", error)

    async def _apply_scriptlets(
        self, scriptlets: list[ScriptletInvocation], stats: CategoryStats
    ) -> None:
        if not scriptlets:
            return

        pending: list[tuple[str, ScriptletInvocation]] = []
        for invocation in scriptlets:
            key = fingerprint("scriptlet:" + invocation.name, list(invocation.args))
            if not self._already_applied(key, stats, f"Scriptlet {invocation.name}"):
                pending.append((key, invocation))
        if not pending:
            return

        stats.attempted += len(pending)
        results = await asyncio.gather(
            *(
                self._runtime.invoke(self.scope, inv.name, inv.args, self._verbose)
                for _, inv in pending
            ),
            return_exceptions=True,
        )

        for (key, invocation), result in zip(pending, results):
            if result is True:
                stats.succeeded += 1
                self._applied.add(key)
            elif isinstance(result, BaseException):
                logger.error("Scriptlet %s raised: %s", invocation.name, result)

    async def close(self) -> None:
        """Release observers and extended CSS instances."""
        await self.scope.close()
        try:
            await self._extended_css.dispose()
        except PlaywrightError as e:
            logger.debug("Could not dispose ExtendedCss instances: %s", e)
        self._applied.clear()
