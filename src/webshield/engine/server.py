"""
Engine host: answers rule requests over a Unix socket.

The host does not compile rules itself. A provider callable maps a URL to
the already serialized rule payload; the host takes care of chunking,
subscriptions and update broadcasts.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ..protocol.messages import (
    GET_RULES_FOR_HOST,
    PING,
    PONG,
    RULES_UPDATED,
    SUBSCRIBE,
    decode,
    encode,
)
from ..protocol.transport import ClientConnection, get_server

logger = logging.getLogger(__name__)

RuleProvider = Callable[[str], Awaitable[str] | str]

DEFAULT_CHUNK_SIZE = 32768


@dataclass
class _TransferState:
    """Chunks still owed to one connection."""

    url: str = ""
    chunks: list[str] = field(default_factory=list)
    position: int = 0

    @property
    def more(self) -> bool:
        return self.position < len(self.chunks)


def split_payload(payload: str, chunk_size: int) -> list[str]:
    """Split a payload into chunks of at most ``chunk_size`` characters."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    return [payload[i : i + chunk_size] for i in range(0, len(payload), chunk_size)] or [""]


class EngineServer:
    """Serves ``getRulesForHost`` requests from a rule provider."""

    def __init__(
        self,
        provider: RuleProvider,
        name: str = "engine",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        verbose: bool = False,
    ) -> None:
        self._provider = provider
        self._chunk_size = chunk_size
        self._verbose = verbose
        self._server = get_server(name, self._handle_connection)
        self._subscribers: set[ClientConnection] = set()

    @property
    def address(self) -> str:
        return self._server.get_address()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def start(self) -> None:
        await self._server.start()
        logger.info("Engine host listening on %s", self.address)

    async def close(self) -> None:
        for connection in list(self._subscribers):
            await connection.close()
        self._subscribers.clear()
        await self._server.close()

    async def notify_rules_updated(self) -> int:
        """Tell every subscriber that compiled rules changed.

        Returns:
            Number of subscribers the notification reached.
        """
        line = encode({"action": RULES_UPDATED})
        delivered = 0
        for connection in list(self._subscribers):
            try:
                await connection.send_line(line)
                delivered += 1
            except (ConnectionError, OSError) as e:
                logger.debug("Dropping subscriber: %s", e)
                self._subscribers.discard(connection)
        logger.info("Sent rulesUpdated to %d subscriber(s)", delivered)
        return delivered

    async def _handle_connection(self, connection: ClientConnection) -> None:
        state = _TransferState()
        try:
            while True:
                line = await connection.recv_line()
                if line is None:
                    break

                try:
                    message = decode(line)
                except ValueError as e:
                    await connection.send_line(encode({"error": f"JSON parse error: {e}"}))
                    continue

                action = message.get("action")
                if action == SUBSCRIBE:
                    self._subscribers.add(connection)
                    continue
                if action == PING:
                    reply: dict[str, Any] = {"action": PONG}
                elif action == GET_RULES_FOR_HOST:
                    reply = await self._rules_reply(message, state)
                else:
                    reply = {"error": "Unknown action"}

                await connection.send_line(encode(reply))
        except (ConnectionError, OSError) as e:
            logger.debug("Engine client disconnected: %s", e)
        finally:
            self._subscribers.discard(connection)
            await connection.close()

    async def _rules_reply(self, message: dict[str, Any], state: _TransferState) -> dict[str, Any]:
        url = message.get("url")
        if not isinstance(url, str) or not url:
            return {"error": "Invalid URL"}

        from_beginning = message.get("fromBeginning", True)
        if from_beginning or state.url != url or not state.more:
            try:
                payload = await self._load(url)
            except Exception as e:
                logger.exception("Provider failed for %s", url[:100])
                return {"error": f"Error getting blocking data: {e}"}

            if len(payload) <= self._chunk_size:
                state.url, state.chunks, state.position = "", [], 0
                return {"url": url, "data": payload, "chunked": False, "verbose": self._verbose}

            state.url = url
            state.chunks = split_payload(payload, self._chunk_size)
            state.position = 0
            logger.debug("Serving %s in %d chunks", url[:100], len(state.chunks))

        chunk = state.chunks[state.position]
        state.position += 1
        return {
            "url": url,
            "data": chunk,
            "chunked": True,
            "more": state.more,
            "verbose": self._verbose,
        }

    async def _load(self, url: str) -> str:
        result = self._provider(url)
        if inspect.isawaitable(result):
            result = await result
        if not isinstance(result, str):
            raise TypeError(f"provider returned {type(result).__name__}, expected str")
        return result
