"""Scriptlet runtime and built-in scriptlets."""

from .dom import REMOVE_ATTR_NAMES, REMOVE_IN_SHADOW_DOM_NAMES, remove_attr, remove_in_shadow_dom
from .injected import INJECTED_SCRIPTLETS
from .runtime import (
    ErrorReporter,
    ScriptletContext,
    ScriptletKind,
    ScriptletRuntime,
    ScriptletScope,
    ScriptletSource,
)


def create_default_runtime(on_error: ErrorReporter | None = None) -> ScriptletRuntime:
    """Build a runtime with every built-in scriptlet registered."""
    runtime = ScriptletRuntime(on_error=on_error)
    runtime.register(REMOVE_ATTR_NAMES[0], remove_attr, REMOVE_ATTR_NAMES[1:])
    runtime.register(
        REMOVE_IN_SHADOW_DOM_NAMES[0], remove_in_shadow_dom, REMOVE_IN_SHADOW_DOM_NAMES[1:]
    )
    for name, (source, aliases) in INJECTED_SCRIPTLETS.items():
        runtime.register(name, source, aliases)
    return runtime


__all__ = [
    "ScriptletContext",
    "ScriptletKind",
    "ScriptletRuntime",
    "ScriptletScope",
    "ScriptletSource",
    "create_default_runtime",
]
