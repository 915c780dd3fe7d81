"""
Message shapes exchanged between the engine host, the delivery process and
pages.
"""

import json
from dataclasses import dataclass
from typing import Any

# Engine host actions
GET_RULES_FOR_HOST = "getRulesForHost"
SUBSCRIBE = "subscribe"
PING = "ping"
PONG = "pong"

# Delivery process actions
GET_ADVANCED_BLOCKING_DATA = "getAdvancedBlockingData"
REPORT_SCRIPTLET_ERROR = "reportScriptletError"

# Unsolicited engine notification
RULES_UPDATED = "rulesUpdated"


@dataclass
class EngineRequest:
    """Request for the rules of one URL, or the next chunk of them."""

    url: str
    from_beginning: bool = True

    def to_message(self) -> dict[str, Any]:
        return {
            "action": GET_RULES_FOR_HOST,
            "url": self.url,
            "fromBeginning": self.from_beginning,
        }


@dataclass
class EngineReply:
    """One reply from the engine host."""

    data: str = ""
    chunked: bool | None = None
    more: bool = False
    verbose: Any = None
    error: str | None = None

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> "EngineReply":
        data = message.get("data")
        if data is None:
            data = ""
        elif not isinstance(data, str):
            # Some engine builds answer with the object itself
            data = json.dumps(data)
        chunked = message.get("chunked")
        error = message.get("error")
        return cls(
            data=data,
            chunked=bool(chunked) if chunked is not None else None,
            more=bool(message.get("more", False)),
            verbose=message.get("verbose"),
            error=str(error) if error else None,
        )


@dataclass
class ScriptletErrorReport:
    """A scriptlet failure forwarded from the page to the delivery process."""

    scriptlet_name: str
    error_message: str
    error_stack: str = ""
    url: str = ""

    @classmethod
    def from_detail(cls, detail: dict[str, Any]) -> "ScriptletErrorReport":
        return cls(
            scriptlet_name=str(detail.get("scriptletName") or "unknown"),
            error_message=str(detail.get("errorMessage") or ""),
            error_stack=str(detail.get("errorStack") or ""),
            url=str(detail.get("url") or ""),
        )

    def to_message(self) -> dict[str, Any]:
        return {
            "action": REPORT_SCRIPTLET_ERROR,
            "detail": {
                "scriptletName": self.scriptlet_name,
                "errorMessage": self.error_message,
                "errorStack": self.error_stack,
                "url": self.url,
            },
        }


def encode(message: dict[str, Any]) -> str:
    """Serialize a message to a single line."""
    return json.dumps(message, separators=(",", ":"))


def decode(line: str) -> dict[str, Any]:
    """Parse one line into a message object.

    Raises:
        ValueError: If the line is not a JSON object.
    """
    message = json.loads(line)
    if not isinstance(message, dict):
        raise ValueError(f"Expected a JSON object, got {type(message).__name__}")
    return message
