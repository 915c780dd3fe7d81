"""
Client side of the privileged rule engine link.

The engine may answer a rule request in one reply or split the payload into
chunks. Each chunk is fetched with a continuation request on the same
connection until the engine says there is nothing more.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ..exceptions import (
    EngineConnectionLostError,
    EngineNotConnectedError,
    EngineReportedError,
    EngineTimeoutError,
    MalformedResponseError,
)
from ..protocol.messages import PING, PONG, SUBSCRIBE, EngineReply, EngineRequest, decode, encode
from ..protocol.transport import SocketError, Transport, get_client_transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], Transport]
EngineMessageHandler = Callable[[dict[str, Any]], Awaitable[None] | None]

# Upper bound on continuation requests for one logical fetch
DEFAULT_MAX_CHUNKS = 4096


@dataclass
class EnginePayload:
    """Parsed rule payload plus the engine's verbose flag."""

    data: dict[str, Any]
    verbose: Any = None


@dataclass
class ChunkAccumulator:
    """Reassembly state for one logical request."""

    more_expected: bool = True
    is_first_request: bool = True
    chunked: bool = False
    verbose: Any = None
    replies: int = 0
    _parts: list[str] = field(default_factory=list, repr=False)

    @property
    def accumulated_payload(self) -> str:
        return "".join(self._parts)

    def add(self, reply: EngineReply) -> None:
        """Fold one reply into the accumulator."""
        if reply.data:
            self._parts.append(reply.data)
        # A reply that omits the flag keeps the previous value
        if reply.chunked is not None:
            self.chunked = reply.chunked
        if reply.verbose is not None:
            self.verbose = reply.verbose
        self.replies += 1
        self.is_first_request = False
        self.more_expected = self.chunked and reply.more


class EngineBridge:
    """Sends rule requests to the engine host and reassembles the replies.

    No retries happen here; callers decide based on the error's
    ``retryable`` attribute.
    """

    def __init__(
        self,
        transport_factory: TransportFactory | None = None,
        timeout: float = 10.0,
        max_chunks: int = DEFAULT_MAX_CHUNKS,
        socket_name: str = "engine",
    ) -> None:
        if transport_factory is None:

            def transport_factory() -> Transport:
                return get_client_transport(socket_name)

        self._transport_factory = transport_factory
        self._timeout = timeout
        self._max_chunks = max_chunks

    async def _connect(self) -> Transport:
        transport = self._transport_factory()
        try:
            await transport.connect()
        except SocketError as e:
            raise EngineNotConnectedError(f"Engine not connected: {e}") from e
        return transport

    async def _exchange(self, transport: Transport, message: dict[str, Any]) -> dict[str, Any]:
        try:
            await transport.send_line(encode(message))
            line = await asyncio.wait_for(transport.recv_line(), timeout=self._timeout)
        except TimeoutError as e:
            raise EngineTimeoutError(
                f"Timeout waiting for engine reply after {self._timeout}s"
            ) from e
        except (ConnectionError, OSError) as e:
            raise EngineConnectionLostError(f"Engine connection lost: {e}") from e
        except ValueError as e:
            # Invalid UTF-8, or a line over the stream limit
            raise MalformedResponseError(f"JSON parse error: {e}") from e

        if not line:
            raise EngineConnectionLostError("Engine closed the connection")

        try:
            return decode(line)
        except ValueError as e:
            raise MalformedResponseError(f"JSON parse error: {e}") from e

    async def fetch_raw(self, url: str) -> tuple[str, Any]:
        """Fetch the complete, still serialized payload for a URL.

        Returns:
            The accumulated payload string and the engine's verbose flag.
        """
        transport = await self._connect()
        accumulator = ChunkAccumulator()

        try:
            while accumulator.more_expected:
                if accumulator.replies >= self._max_chunks:
                    raise MalformedResponseError(
                        f"Engine sent more than {self._max_chunks} chunks"
                    )

                request = EngineRequest(url=url, from_beginning=accumulator.is_first_request)
                reply = EngineReply.from_message(
                    await self._exchange(transport, request.to_message())
                )
                if reply.error:
                    raise EngineReportedError(reply.error)

                accumulator.add(reply)
                if accumulator.chunked:
                    logger.debug(
                        "Chunk %d for %s (%d chars, more=%s)",
                        accumulator.replies,
                        url[:100],
                        len(reply.data),
                        reply.more,
                    )
        finally:
            await transport.close()

        return accumulator.accumulated_payload, accumulator.verbose

    async def fetch_rules(self, url: str) -> EnginePayload:
        """Fetch and parse the rule payload for a URL.

        Raises:
            EngineError: Any engine failure, see the subclasses.
        """
        raw, verbose = await self.fetch_raw(url)

        if not raw.strip():
            return EnginePayload(data={}, verbose=verbose)

        try:
            data = json.loads(raw)
        except ValueError as e:
            raise MalformedResponseError(f"JSON parse error: {e}") from e

        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"JSON parse error: expected an object, got {type(data).__name__}"
            )

        return EnginePayload(data=data, verbose=verbose)

    async def ping(self) -> bool:
        """Check that the engine host answers."""
        try:
            transport = await self._connect()
        except EngineNotConnectedError:
            return False
        try:
            reply = await self._exchange(transport, {"action": PING})
        except (EngineTimeoutError, EngineConnectionLostError, MalformedResponseError) as e:
            logger.debug("Engine ping failed: %s", e)
            return False
        finally:
            await transport.close()
        return reply.get("action") == PONG

    async def listen(self, handler: EngineMessageHandler) -> None:
        """Receive unsolicited engine messages until the connection closes.

        Raises:
            EngineNotConnectedError: If the engine host cannot be reached.
        """
        transport = await self._connect()
        try:
            await transport.send_line(encode({"action": SUBSCRIBE}))
            logger.debug("Subscribed to engine notifications")

            while True:
                try:
                    line = await transport.recv_line()
                except ValueError as e:
                    logger.warning("Ignoring unreadable engine message: %s", e)
                    continue
                if not line:
                    break

                try:
                    message = decode(line)
                except ValueError as e:
                    logger.warning("Ignoring undecodable engine message: %s", e)
                    continue

                result = handler(message)
                if inspect.isawaitable(result):
                    await result
        finally:
            await transport.close()

        logger.info("Engine notification stream closed")
