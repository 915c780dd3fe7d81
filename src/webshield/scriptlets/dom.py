"""
DOM scriptlets driven from Python.

Both scriptlets are level-triggered: they act on the current document,
then act again on every throttled mutation.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from .helpers import (
    ASAP_FLAG,
    COMPLETE_FLAG,
    STAY_FLAG,
    dispose_all,
    document_root,
    find_host_elements,
    parse_flags,
    pierce_shadow_dom,
    query_document,
)

if TYPE_CHECKING:
    from playwright.async_api import ElementHandle

    from .runtime import ScriptletContext

logger = logging.getLogger(__name__)

READY_STATE_JS = "() => document.readyState"

# Returns the number of elements touched, or -1 for an invalid selector
REMOVE_ATTR_JS = """
({ selector, attrs }) => {
    let nodes;
    try {
        nodes = document.querySelectorAll(selector);
    } catch (e) {
        return -1;
    }
    nodes.forEach((node) => attrs.forEach((attr) => node.removeAttribute(attr)));
    return nodes.length;
}
"""

REMOVE_ELEMENT_JS = "(el) => el.remove()"
SUPPORTS_SHADOW_JS = "() => typeof Element.prototype.attachShadow === 'function'"

REMOVE_ATTR_NAMES = (
    "remove-attr",
    "remove-attr.js",
    "ubo-remove-attr.js",
    "ra.js",
    "ubo-ra.js",
    "ubo-remove-attr",
    "ubo-ra",
)
REMOVE_IN_SHADOW_DOM_NAMES = ("remove-in-shadow-dom",)


async def remove_attr(
    ctx: ScriptletContext, attrs: str = "", selector: str = "", applying: str = "asap stay"
) -> None:
    """Remove attributes from matching elements.

    ``attrs`` is a ``|`` separated list. Without ``selector`` every element
    carrying one of the attributes matches. ``applying`` takes the
    ``asap``/``complete``/``stay`` flags.
    """
    if not attrs:
        return

    attr_list = re.split(r"\s*\|\s*", attrs)
    if not selector:
        selector = "[" + "],[".join(attr_list) + "]"

    async def rmattr() -> None:
        touched = await ctx.page.evaluate(REMOVE_ATTR_JS, {"selector": selector, "attrs": attr_list})
        if touched < 0:
            ctx.log(f"Invalid selector arg: '{selector}'")
        elif touched > 0:
            ctx.hit()

    flags = parse_flags(applying)

    async def run() -> None:
        await rmattr()
        if flags.has(STAY_FLAG):
            await ctx.observe(rmattr, attributes=True)

    ready_state = await ctx.page.evaluate(READY_STATE_JS)

    if flags.has(ASAP_FLAG):
        if ready_state == "loading":
            ctx.defer("domcontentloaded", rmattr)
        else:
            await rmattr()

    if ready_state != "complete" and flags.has(COMPLETE_FLAG):
        ctx.defer("load", run)
    elif flags.has(STAY_FLAG):
        if " " not in applying:
            await rmattr()
        await ctx.observe(rmattr, attributes=True)


async def remove_in_shadow_dom(
    ctx: ScriptletContext, selector: str = "", base_selector: str = ""
) -> None:
    """Remove elements matching ``selector`` inside open shadow roots.

    Starts from ``base_selector`` hosts if given, else from every shadow
    host in the document, and descends one shadow level per pass.
    """
    if not selector:
        return
    if not await ctx.page.evaluate(SUPPORTS_SHADOW_JS):
        return

    async def initial_hosts() -> list[ElementHandle]:
        if base_selector:
            return await query_document(ctx.page, base_selector)
        root = await document_root(ctx.page)
        try:
            return await find_host_elements(root)
        finally:
            await root.dispose()

    async def remove_handler() -> None:
        hosts = await initial_hosts()
        while hosts:
            try:
                result = await pierce_shadow_dom(selector, hosts)
            finally:
                await dispose_all(hosts)

            removed = False
            try:
                for target in result.targets:
                    await target.evaluate(REMOVE_ELEMENT_JS)
                removed = True
            finally:
                await dispose_all(result.targets)
                if not removed:
                    await dispose_all(result.inner_hosts)

            if result.targets:
                ctx.hit()
            hosts = result.inner_hosts

    await remove_handler()
    await ctx.observe(remove_handler, attributes=True)
