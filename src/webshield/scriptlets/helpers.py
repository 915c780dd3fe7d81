"""
Helpers shared by the DOM scriptlets.

Mutation observation runs in the page as a plain MutationObserver that
reports back through one exposed binding per page. The Python side
throttles the notifications and runs the scriptlet callback with the page
observer disconnected, so the callback's own DOM edits are not observed.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from playwright.async_api import Error as PlaywrightError

if TYPE_CHECKING:
    from playwright.async_api import ElementHandle, JSHandle, Page

    from .runtime import ScriptletSource

logger = logging.getLogger(__name__)

THROTTLE_DELAY = 0.02  # 20 ms
HIT_PREFIX = "[WebShield]"

ASAP_FLAG = "asap"
COMPLETE_FLAG = "complete"
STAY_FLAG = "stay"
VALID_FLAGS = frozenset({ASAP_FLAG, COMPLETE_FLAG, STAY_FLAG})

MUTATION_BINDING = "__wsaMutation"

CONNECT_JS = """
([id, options]) => {
    const observers = window.__wsaObservers || (window.__wsaObservers = {});
    if (observers[id]) observers[id].disconnect();
    const observer = new MutationObserver(() => window.__wsaMutation(id));
    const init = { childList: true, subtree: true, attributes: options.attributes };
    if (options.attributes && options.attributeFilter.length > 0) {
        init.attributeFilter = options.attributeFilter;
    }
    observer.observe(document.documentElement, init);
    observers[id] = observer;
}
"""

DISCONNECT_JS = """
(id) => {
    const observers = window.__wsaObservers;
    if (observers && observers[id]) {
        observers[id].disconnect();
        delete observers[id];
    }
}
"""

FIND_HOSTS_JS = "(root) => root ? Array.from(root.querySelectorAll('*')).filter((el) => el.shadowRoot) : []"
QUERY_ALL_JS = "(root, selector) => root ? Array.from(root.querySelectorAll(selector)) : []"
SHADOW_ROOT_JS = "(host) => host.shadowRoot"
DOCUMENT_ROOT_JS = "() => document.documentElement"
QUERY_DOCUMENT_JS = "(selector) => Array.from(document.querySelectorAll(selector))"


def flatten(values: Iterable[Any]) -> list[Any]:
    """Collapse nested lists and tuples into one list, keeping order."""
    stack = list(values)
    result = []
    while stack:
        item = stack.pop()
        if isinstance(item, (list, tuple)):
            stack.extend(item)
        else:
            result.append(item)
    result.reverse()
    return result


@dataclass(frozen=True)
class Flags:
    passed: frozenset[str]

    def has(self, flag: str) -> bool:
        return flag in self.passed


def parse_flags(flags: str) -> Flags:
    """Parse a space separated ``asap``/``complete``/``stay`` flag string."""
    return Flags(frozenset(f for f in flags.strip().split(" ") if f in VALID_FLAGS))


def log_message(source: ScriptletSource, message: str, forced: bool = False) -> None:
    if not forced and not source.verbose:
        return
    logger.info("%s: %s", source.name, message)


def hit(source: ScriptletSource) -> None:
    """Log that a scriptlet did something. Verbose sources only."""
    if not source.verbose:
        return
    label = f"{HIT_PREFIX} {source.domain_name}"
    if source.args:
        joined = "', '".join(source.args)
        label += f"#%#//scriptlet('{source.name}', '{joined}')"
    else:
        label += f"#%#//scriptlet('{source.name}')"
    logger.info(label)


class Throttle:
    """Call ``callback`` at most once per ``delay`` seconds.

    The first call runs immediately. Calls arriving inside the window are
    collapsed into one trailing call when the window closes.
    """

    def __init__(self, callback: Callable[[], None], delay: float = THROTTLE_DELAY) -> None:
        self._callback = callback
        self._delay = delay
        self._waiting = False
        self._pending = False
        self._handle: asyncio.TimerHandle | None = None

    def __call__(self) -> None:
        if self._waiting:
            self._pending = True
            return
        self._callback()
        self._waiting = True
        self._handle = asyncio.get_running_loop().call_later(self._delay, self._release)

    def _release(self) -> None:
        self._waiting = False
        self._handle = None
        if self._pending:
            self._pending = False
            self()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._waiting = False
        self._pending = False


class ObserverState(Enum):
    IDLE = "idle"
    OBSERVING = "observing"
    DRAINING = "draining"


class DomObserver:
    """Re-runs an async callback on throttled DOM mutations.

    IDLE -> OBSERVING on start; OBSERVING -> DRAINING on a mutation, with
    the page observer disconnected while the callback runs; DRAINING ->
    OBSERVING once the callback finishes and the observer is reconnected.
    """

    def __init__(
        self,
        hub: MutationHub,
        callback: Callable[[], Awaitable[None]],
        attributes: bool = False,
        attribute_filter: Sequence[str] = (),
        delay: float = THROTTLE_DELAY,
    ) -> None:
        self.id = hub.next_id()
        self.state = ObserverState.IDLE
        self._hub = hub
        self._callback = callback
        self.attributes = attributes
        self.attribute_filter = list(attribute_filter)
        self._throttle = Throttle(self._drain_soon, delay)
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    async def start(self) -> None:
        await self._connect()

    async def _connect(self) -> None:
        await self._hub.connect(self)
        self.state = ObserverState.OBSERVING

    def notify(self) -> None:
        """Called by the hub for each mutation batch."""
        if self.state is ObserverState.OBSERVING:
            self._throttle()

    def _drain_soon(self) -> None:
        if self.state is not ObserverState.OBSERVING:
            return
        self.state = ObserverState.DRAINING
        self._task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        try:
            await self._hub.disconnect(self)
            await self._callback()
        except Exception as e:
            logger.warning("Observer %d callback failed: %s", self.id, e)
        if self._closed:
            return
        try:
            await self._connect()
        except PlaywrightError as e:
            # Page navigated away or closed
            logger.debug("Observer %d could not reconnect: %s", self.id, e)
            self.state = ObserverState.IDLE

    async def close(self) -> None:
        self._closed = True
        self._throttle.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self.state = ObserverState.IDLE
        try:
            await self._hub.disconnect(self)
        except PlaywrightError as e:
            logger.debug("Observer %d disconnect failed: %s", self.id, e)
        finally:
            self._hub.forget(self)


class MutationHub:
    """Routes page MutationObserver callbacks to DomObserver instances."""

    def __init__(self, page: Page) -> None:
        self._page = page
        self._observers: dict[int, DomObserver] = {}
        self._ids = itertools.count(1)
        self._installed = False
        self._install_lock = asyncio.Lock()

    def next_id(self) -> int:
        return next(self._ids)

    async def install(self) -> None:
        async with self._install_lock:
            if self._installed:
                return
            await self._page.expose_binding(MUTATION_BINDING, self._on_mutation)
            self._installed = True

    def _on_mutation(self, source: Any, observer_id: int) -> None:
        observer = self._observers.get(observer_id)
        if observer is not None:
            observer.notify()

    async def connect(self, observer: DomObserver) -> None:
        self._observers[observer.id] = observer
        options = {"attributes": observer.attributes, "attributeFilter": observer.attribute_filter}
        await self._page.evaluate(CONNECT_JS, [observer.id, options])

    async def disconnect(self, observer: DomObserver) -> None:
        await self._page.evaluate(DISCONNECT_JS, observer.id)

    def forget(self, observer: DomObserver) -> None:
        self._observers.pop(observer.id, None)


@dataclass
class ShadowPierceResult:
    targets: list[ElementHandle] = field(default_factory=list)
    inner_hosts: list[ElementHandle] = field(default_factory=list)


async def _unpack_elements(array: JSHandle) -> list[ElementHandle]:
    properties = await array.get_properties()
    elements = []
    for key in sorted((k for k in properties if k.isdigit()), key=int):
        element = properties[key].as_element()
        if element is not None:
            elements.append(element)
    # Non-element properties such as "length" are handles too
    await dispose_all(prop for prop in properties.values() if prop.as_element() is None)
    await array.dispose()
    return elements


async def find_host_elements(root: JSHandle | None) -> list[ElementHandle]:
    """Every element under ``root`` that has an open shadow root."""
    if root is None:
        return []
    return await _unpack_elements(await root.evaluate_handle(FIND_HOSTS_JS))


async def query_all(root: JSHandle, selector: str) -> list[ElementHandle]:
    return await _unpack_elements(await root.evaluate_handle(QUERY_ALL_JS, selector))


async def dispose_all(handles: Iterable[JSHandle]) -> None:
    for handle in handles:
        await handle.dispose()


async def pierce_shadow_dom(selector: str, hosts: Sequence[JSHandle]) -> ShadowPierceResult:
    """Match ``selector`` in each host's light DOM and shadow root.

    Also collects the shadow hosts one level deeper, so callers can descend
    iteratively. The caller owns the returned handles and the ``hosts``.
    """
    result = ShadowPierceResult()
    nested: list[list[ElementHandle]] = []
    try:
        for host in hosts:
            result.targets.extend(await query_all(host, selector))
            shadow_root = await host.evaluate_handle(SHADOW_ROOT_JS)
            try:
                result.targets.extend(await query_all(shadow_root, selector))
                nested.append(await find_host_elements(shadow_root))
            finally:
                await shadow_root.dispose()
    except BaseException:
        await dispose_all(result.targets + flatten(nested))
        raise
    result.inner_hosts = flatten(nested)
    return result


async def document_root(page: Page) -> JSHandle:
    return await page.evaluate_handle(DOCUMENT_ROOT_JS)


async def query_document(page: Page, selector: str) -> list[ElementHandle]:
    return await _unpack_elements(await page.evaluate_handle(QUERY_DOCUMENT_JS, selector))
