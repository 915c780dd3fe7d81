"""
Scriptlet registry and invocation.

A scriptlet is either a DOM routine written in Python against a Playwright
page, or a JavaScript function source injected into the page. Both are
registered under a primary name plus aliases and invoked the same way.
Invocation never raises: failures are logged and reported out of band.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import traceback
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..models import get_hostname
from ..protocol.messages import ScriptletErrorReport
from .helpers import DomObserver, MutationHub, flatten, hit, log_message

if TYPE_CHECKING:
    from playwright.async_api import Page

logger = logging.getLogger(__name__)

DomScriptlet = Callable[..., Awaitable[None]]
ErrorReporter = Callable[[ScriptletErrorReport], Awaitable[None] | None]


class ScriptletKind(Enum):
    DOM = "dom"
    INJECTED = "injected"


@dataclass(frozen=True)
class ScriptletSource:
    """What a running scriptlet knows about its own invocation."""

    name: str
    args: tuple[str, ...] = ()
    verbose: bool = False
    url: str = ""

    @property
    def domain_name(self) -> str:
        return get_hostname(self.url) or ""


@dataclass(frozen=True)
class RegisteredScriptlet:
    name: str
    kind: ScriptletKind
    handler: DomScriptlet | None = None
    source: str | None = None
    aliases: tuple[str, ...] = ()


class ScriptletScope:
    """Per-page owner of mutation observers and deferred runs.

    ``reset`` drops everything tied to the current document; ``close`` also
    stops the scope for good.
    """

    def __init__(self, page: Page, hub: MutationHub | None = None) -> None:
        self.page = page
        self._hub = hub or MutationHub(page)
        self._observers: list[DomObserver] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self.closed = False

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    async def observe(
        self,
        callback: Callable[[], Awaitable[None]],
        attributes: bool = False,
        attribute_filter: Sequence[str] = (),
    ) -> DomObserver:
        await self._hub.install()
        observer = DomObserver(self._hub, callback, attributes, attribute_filter)
        await observer.start()
        self._observers.append(observer)
        return observer

    def defer(self, load_state: str, callback: Callable[[], Awaitable[None]]) -> None:
        """Run ``callback`` once the page reaches ``load_state``."""

        async def run() -> None:
            await self.page.wait_for_load_state(load_state)
            await callback()

        task = asyncio.create_task(run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def reset(self) -> None:
        observers, self._observers = self._observers, []
        for observer in observers:
            await observer.close()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        self.closed = True
        await self.reset()


@dataclass
class ScriptletContext:
    """Handed to DOM scriptlets as their first argument."""

    scope: ScriptletScope
    source: ScriptletSource
    report: Callable[[ScriptletSource, BaseException], None] = field(repr=False)

    @property
    def page(self) -> Page:
        return self.scope.page

    def hit(self) -> None:
        hit(self.source)

    def log(self, message: str, forced: bool = False) -> None:
        log_message(self.source, message, forced)

    def _guard(self, callback: Callable[[], Awaitable[None]]) -> Callable[[], Awaitable[None]]:
        async def run() -> None:
            try:
                await callback()
            except Exception as e:
                self.report(self.source, e)

        return run

    async def observe(
        self,
        callback: Callable[[], Awaitable[None]],
        attributes: bool = False,
        attribute_filter: Sequence[str] = (),
    ) -> DomObserver:
        """Re-run ``callback`` on throttled mutations of the document."""
        return await self.scope.observe(self._guard(callback), attributes, attribute_filter)

    def defer(self, load_state: str, callback: Callable[[], Awaitable[None]]) -> None:
        self.scope.defer(load_state, self._guard(callback))


def build_injection(source: str, args: Sequence[str]) -> str:
    """Wrap a JS scriptlet function so ``page.evaluate`` calls it with ``args``."""
    call_args = ", ".join(json.dumps(arg) for arg in args)
    return f"() => {{ ({source.strip()})({call_args}); }}"


class ScriptletRuntime:
    """Name-keyed scriptlet registry."""

    def __init__(self, on_error: ErrorReporter | None = None) -> None:
        self._registry: dict[str, RegisteredScriptlet] = {}
        self._on_error = on_error
        self._reports: set[asyncio.Task[Any]] = set()

    def __contains__(self, name: object) -> bool:
        return name in self._registry

    def __len__(self) -> int:
        return len(self._registry)

    def names(self) -> list[str]:
        return sorted(self._registry)

    def register(
        self,
        name: str,
        handler: DomScriptlet | str,
        aliases: Iterable[str] = (),
    ) -> RegisteredScriptlet:
        """Register a scriptlet under ``name`` and its aliases.

        Raises:
            TypeError: If ``handler`` is neither a coroutine function nor JS source.
            ValueError: If a name is empty or already taken.
        """
        aliases = tuple(aliases)
        for candidate in (name, *aliases):
            if not isinstance(candidate, str) or not candidate.strip():
                raise ValueError("Scriptlet names must be non-empty strings")
            if candidate in self._registry:
                raise ValueError(f"Scriptlet already registered: {candidate}")

        if isinstance(handler, str):
            if not handler.strip():
                raise ValueError(f"Empty JS source for scriptlet {name}")
            entry = RegisteredScriptlet(
                name=name, kind=ScriptletKind.INJECTED, source=handler, aliases=aliases
            )
        elif inspect.iscoroutinefunction(handler):
            entry = RegisteredScriptlet(
                name=name, kind=ScriptletKind.DOM, handler=handler, aliases=aliases
            )
        else:
            raise TypeError(
                f"Scriptlet {name} must be a coroutine function or JS source, "
                f"got {type(handler).__name__}"
            )

        for candidate in (name, *aliases):
            self._registry[candidate] = entry
        return entry

    def resolve(self, name: str) -> RegisteredScriptlet | None:
        return self._registry.get(name)

    async def invoke(
        self,
        scope: ScriptletScope,
        name: str,
        args: Sequence[Any] = (),
        verbose: bool = False,
    ) -> bool:
        """Run one scriptlet against the scope's page.

        Returns:
            True if the scriptlet ran to completion, False if it is unknown
            or failed.
        """
        entry = self.resolve(name)
        if entry is None:
            logger.warning("Unknown scriptlet, skipping: %s", name)
            return False

        page_url = scope.page.url if isinstance(scope.page.url, str) else ""
        source = ScriptletSource(
            name=name,
            args=tuple(str(arg) for arg in flatten(args)),
            verbose=verbose,
            url=page_url,
        )

        try:
            if entry.kind is ScriptletKind.DOM:
                if entry.handler is None:
                    raise RuntimeError(f"DOM scriptlet {name} has no handler")
                context = ScriptletContext(scope=scope, source=source, report=self._report)
                await entry.handler(context, *source.args)
            else:
                if entry.source is None:
                    raise RuntimeError(f"Injected scriptlet {name} has no source")
                await scope.page.evaluate(build_injection(entry.source, source.args))
        except Exception as e:
            self._report(source, e)
            return False

        logger.debug("Scriptlet %s ran with %d args", name, len(source.args))
        return True

    def _report(self, source: ScriptletSource, error: BaseException) -> None:
        logger.error("Scriptlet %s failed on %s: %s", source.name, source.url[:100], error)
        if self._on_error is None:
            return

        report = ScriptletErrorReport(
            scriptlet_name=source.name,
            error_message=str(error) or type(error).__name__,
            error_stack="".join(traceback.format_exception(error)),
            url=source.url,
        )
        try:
            result = self._on_error(report)
        except Exception as e:
            logger.warning("Scriptlet error reporter failed: %s", e)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._reports.add(task)
            task.add_done_callback(self._reports.discard)

    async def drain_reports(self) -> None:
        """Wait for error reports still being delivered."""
        if self._reports:
            await asyncio.gather(*self._reports, return_exceptions=True)
