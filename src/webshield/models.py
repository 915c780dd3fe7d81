"""
Rule set data model shared by the delivery process and the page side.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

from .exceptions import MalformedResponseError

logger = logging.getLogger(__name__)

# Wire keys of the four rule categories, in application order
CATEGORIES = ("cssInject", "cssExtended", "scripts", "scriptlets")


class RuleSource(str, Enum):
    """Where a delivered rule set came from."""

    CACHE = "cache"
    PINNED_CACHE = "pinned-cache"
    FRESH_FETCH = "fresh-fetch"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ScriptletInvocation:
    """A named scriptlet call with positional string arguments."""

    name: str
    args: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name:
            raise ValueError("Scriptlet name must be a non-empty string")
        object.__setattr__(self, "args", tuple(str(arg) for arg in self.args))

    @classmethod
    def from_raw(cls, entry: Any) -> ScriptletInvocation:
        """Build an invocation from an object or a JSON-encoded object.

        Raises:
            ValueError: If the entry does not describe a scriptlet.
        """
        if isinstance(entry, str):
            entry = json.loads(entry)
        if not isinstance(entry, Mapping) or not isinstance(entry.get("name"), str):
            raise ValueError("Invalid scriptlet object structure")
        args = entry.get("args") or []
        if not isinstance(args, list):
            raise ValueError("Scriptlet args must be a list")
        return cls(name=entry["name"], args=tuple(args))

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "args": list(self.args)}


def _strings(values: Any) -> tuple[str, ...]:
    if not isinstance(values, list):
        return ()
    return tuple(v for v in values if isinstance(v, str))


def _scriptlets(values: Any, url: str = "") -> tuple[ScriptletInvocation, ...]:
    if not isinstance(values, list):
        return ()
    invocations = []
    for entry in values:
        try:
            invocations.append(ScriptletInvocation.from_raw(entry))
        except ValueError as e:
            logger.warning(
                "Dropping invalid scriptlet entry for %s: %r (%s)", url[:100], entry, e
            )
    return tuple(invocations)


@dataclass(frozen=True)
class RuleSet:
    """The complete set of instructions for one page."""

    css_inject: tuple[str, ...] = ()
    css_extended: tuple[str, ...] = ()
    scripts: tuple[str, ...] = ()
    scriptlets: tuple[ScriptletInvocation, ...] = ()
    timestamp: float = field(default_factory=time.time)
    source: RuleSource = RuleSource.FRESH_FETCH

    @classmethod
    def empty(cls, source: RuleSource = RuleSource.SKIPPED) -> RuleSet:
        return cls(source=source)

    @classmethod
    def from_payload(
        cls,
        data: Any,
        source: RuleSource = RuleSource.FRESH_FETCH,
        url: str = "",
    ) -> RuleSet:
        """Package raw engine data into a rule set.

        Missing categories default to empty; entries of the wrong type are
        dropped.

        Raises:
            MalformedResponseError: If the data is not an object.
        """
        if not isinstance(data, Mapping):
            raise MalformedResponseError(
                "Invalid or empty data object received from native host."
            )
        return cls(
            css_inject=_strings(data.get("cssInject")),
            css_extended=_strings(data.get("cssExtended")),
            scripts=_strings(data.get("scripts")),
            scriptlets=_scriptlets(data.get("scriptlets"), url),
            source=source,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RuleSet:
        """Rebuild a rule set from its wire shape."""
        try:
            source = RuleSource(data.get("source", RuleSource.FRESH_FETCH.value))
        except ValueError:
            source = RuleSource.FRESH_FETCH
        rule_set = cls.from_payload(data, source=source)
        timestamp = data.get("timestamp")
        if isinstance(timestamp, (int, float)):
            rule_set = replace(rule_set, timestamp=float(timestamp))
        return rule_set

    def to_dict(self) -> dict[str, Any]:
        return {
            "cssInject": list(self.css_inject),
            "cssExtended": list(self.css_extended),
            "scripts": list(self.scripts),
            "scriptlets": [s.to_dict() for s in self.scriptlets],
            "timestamp": self.timestamp,
            "source": self.source.value,
        }

    def with_source(self, source: RuleSource) -> RuleSet:
        return replace(self, source=source)

    @property
    def rule_count(self) -> int:
        return (
            len(self.css_inject)
            + len(self.css_extended)
            + len(self.scripts)
            + len(self.scriptlets)
        )

    def is_empty(self) -> bool:
        return self.rule_count == 0


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def get_hostname(url: str) -> str | None:
    """Extract the hostname rules are keyed by.

    Bare hosts such as ``example.com`` are treated as https URLs. Returns
    None for non-http(s) schemes, empty hosts and single-label hosts other
    than ``localhost``.
    """
    if not isinstance(url, str) or not url.strip():
        return None

    url = url.strip()
    if "://" not in url:
        if ":" in url:
            # about:blank, data:..., javascript:...
            logger.debug("Skipping non-http(s) URL prefix: %s", url[:20])
            return None
        url = "https://" + url

    try:
        parts = urlsplit(url)
        hostname = parts.hostname
    except ValueError as e:
        logger.warning("Failed to parse URL %r: %s", url[:100], e)
        return None

    if parts.scheme not in ("http", "https") or not hostname:
        logger.debug("Skipping URL without an http(s) host: %s", url[:100])
        return None

    if "." not in hostname and hostname != "localhost" and not _is_ip_literal(hostname):
        logger.debug("Skipping single-label host: %s", hostname)
        return None

    return hostname
