"""
Wires rule delivery and application into Playwright pages.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..config import ShieldConfig
from ..exceptions import GatewayError
from ..protocol.messages import ScriptletErrorReport
from ..scriptlets import create_default_runtime
from ..scriptlets.helpers import MutationHub
from ..scriptlets.runtime import ScriptletRuntime, ScriptletScope
from .applier import PageRuleApplier
from .extended_css import ExtendedCssIntegration
from .report import ApplicationReport

if TYPE_CHECKING:
    from playwright.async_api import Frame, Page

    from .gateway import MessagingGateway

logger = logging.getLogger(__name__)

SCRIPTLET_ERROR_BINDING = "__wsaScriptletError"
SCRIPTLET_ERROR_EVENT = "WebShieldScriptletError"

# Forwards scriptlet error events raised inside the page to Python
ERROR_LISTENER_JS = f"""
window.addEventListener('{SCRIPTLET_ERROR_EVENT}', (event) => {{
    const detail = event.detail || {{}};
    window.{SCRIPTLET_ERROR_BINDING}({{
        scriptletName: detail.scriptletName || 'unknown',
        errorMessage: detail.errorMessage || '',
        errorStack: detail.errorStack || '',
        url: window.location.href,
    }});
}});
"""


@dataclass
class _PageState:
    hub: MutationHub
    applier: PageRuleApplier | None = None
    last_report: ApplicationReport | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    tasks: set[asyncio.Task[Any]] = field(default_factory=set)


class PageShield:
    """Fetches and applies rules on every main-frame navigation of a page."""

    def __init__(
        self,
        gateway: MessagingGateway,
        runtime: ScriptletRuntime | None = None,
        config: ShieldConfig | None = None,
    ) -> None:
        self._gateway = gateway
        self._config = config or ShieldConfig()
        self._runtime = runtime or create_default_runtime(on_error=gateway.report_scriptlet_error)
        self._pages: dict[Page, _PageState] = {}

    def last_report(self, page: Page) -> ApplicationReport | None:
        state = self._pages.get(page)
        return state.last_report if state else None

    def _state(self, page: Page) -> _PageState:
        state = self._pages.get(page)
        if state is None:
            state = _PageState(hub=MutationHub(page))
            self._pages[page] = state
        return state

    def _spawn(self, state: _PageState, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        state.tasks.add(task)
        task.add_done_callback(state.tasks.discard)

    async def setup_page(self, page: Page) -> None:
        """Install the error listener and navigation hooks on a page.

        Args:
            page: The Playwright page to protect.
        """
        state = self._state(page)

        await page.expose_binding(SCRIPTLET_ERROR_BINDING, self._on_page_error)
        await page.add_init_script(ERROR_LISTENER_JS)

        page.on(
            "framenavigated",
            lambda frame: self._spawn(state, self._on_frame_navigated(frame)),
        )
        page.on("close", lambda closed: self._spawn(state, self.teardown_page(closed)))

        logger.debug("WebShield setup complete for page")

    async def _on_page_error(self, source: Any, detail: dict[str, Any]) -> None:
        report = ScriptletErrorReport.from_detail(detail if isinstance(detail, dict) else {})
        logger.error(
            "Scriptlet '%s' error on %s: %s",
            report.scriptlet_name,
            report.url[:100],
            report.error_message,
        )
        await self._gateway.report_scriptlet_error(report)

    async def _on_frame_navigated(self, frame: Frame) -> None:
        # Only handle main frame
        if frame.parent_frame is not None:
            return

        page = frame.page
        state = self._pages.get(page)
        if state is None:
            return

        async with state.lock:
            await self._release(state)
            await self._apply_locked(page, state, frame.url)

    async def apply_to_page(self, page: Page, url: str | None = None) -> ApplicationReport:
        """Fetch the rule set for the page's URL and apply it.

        Gateway failures degrade to an empty report carrying the error.
        """
        state = self._state(page)
        async with state.lock:
            return await self._apply_locked(page, state, url or page.url)

    async def _apply_locked(self, page: Page, state: _PageState, url: str) -> ApplicationReport:
        if self._pages.get(page) is not state:
            # Torn down while waiting for the lock
            return ApplicationReport(url=url or "")

        if not url or not url.startswith(("http://", "https://")):
            return ApplicationReport(url=url or "")

        try:
            rule_set = await self._gateway.get_rules(url)
        except GatewayError as e:
            logger.error("Could not fetch rules for %s: %s", url[:100], e)
            report = ApplicationReport(url=url, error=str(e))
            state.last_report = report
            return report

        logger.debug(
            "Got %d rules for %s (source: %s)",
            rule_set.rule_count,
            url[:100],
            rule_set.source.value,
        )

        if state.applier is None:
            state.applier = PageRuleApplier(
                page,
                self._runtime,
                extended_css=ExtendedCssIntegration(page, self._config.extended_css_path),
                scope=ScriptletScope(page, state.hub),
                verbose=self._config.verbose,
            )

        report = await state.applier.apply_all(rule_set, url)
        state.last_report = report
        return report

    async def _release(self, state: _PageState) -> None:
        if state.applier is not None:
            await state.applier.close()
            state.applier = None

    async def teardown_page(self, page: Page) -> None:
        """Release everything held for a page."""
        state = self._pages.pop(page, None)
        if state is None:
            return
        async with state.lock:
            await self._release(state)
        logger.debug("Released WebShield resources for page")

    async def close(self) -> None:
        for page in list(self._pages):
            await self.teardown_page(page)
        await self._runtime.drain_reports()
