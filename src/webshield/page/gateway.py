"""
Page-side channel to the delivery process.

Every request races a timeout and is retried with backoff, unless the
failure is one of the terminal kinds.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any, Protocol

from ..exceptions import (
    ChannelClosedError,
    GatewayTimeoutError,
    RemoteError,
)
from ..models import RuleSet
from ..protocol.messages import GET_ADVANCED_BLOCKING_DATA, ScriptletErrorReport, decode, encode
from ..protocol.transport import SocketError, Transport, get_client_transport
from ..retry import NON_RETRYABLE_GATEWAY_MESSAGES, RetryPolicy, matches_any

if TYPE_CHECKING:
    from ..daemon.service import DeliveryService

logger = logging.getLogger(__name__)

NO_RECEIVER = "Could not establish connection. Receiving end does not exist"

Validator = Callable[[Mapping[str, Any]], Any]


def _metadata_payload(response: Mapping[str, Any]) -> Mapping[str, Any]:
    data = response.get("data")
    payload = data.get("metadataPayload") if isinstance(data, Mapping) else None
    if not isinstance(payload, Mapping):
        raise RemoteError("Invalid response: missing metadataPayload", retryable=True)
    return payload


class Channel(Protocol):
    async def send(self, message: dict[str, Any]) -> dict[str, Any] | None: ...

    async def post(self, message: dict[str, Any]) -> None: ...


class LocalChannel:
    """Talks to a DeliveryService in the same process."""

    def __init__(self, service: DeliveryService) -> None:
        self._service = service

    async def send(self, message: dict[str, Any]) -> dict[str, Any] | None:
        return await self._service.handle_message(message)

    async def post(self, message: dict[str, Any]) -> None:
        await self._service.handle_message(message)


class SocketChannel:
    """Talks to a DeliveryServer over its Unix socket, one connection per request."""

    def __init__(self, name: str = "delivery") -> None:
        self._name = name

    async def _open(self) -> Transport:
        transport = get_client_transport(self._name)
        try:
            await transport.connect()
        except SocketError as e:
            raise ChannelClosedError(NO_RECEIVER) from e
        return transport

    async def send(self, message: dict[str, Any]) -> dict[str, Any] | None:
        transport = await self._open()
        try:
            await transport.send_line(encode(message))
            line = await transport.recv_line()
        except (ConnectionError, OSError) as e:
            raise ChannelClosedError(f"{NO_RECEIVER}: {e}") from e
        finally:
            await transport.close()

        if not line:
            raise ChannelClosedError(NO_RECEIVER)
        return decode(line)

    async def post(self, message: dict[str, Any]) -> None:
        transport = await self._open()
        try:
            await transport.send_line(encode(message))
        finally:
            await transport.close()


class MessagingGateway:
    """Request/response to the delivery process with timeout and retries."""

    def __init__(
        self,
        channel: Channel,
        timeout: float = 10.0,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._channel = channel
        self._timeout = timeout
        self._policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def _send_once(
        self, payload: dict[str, Any], validate: Validator | None
    ) -> dict[str, Any]:
        try:
            response = await asyncio.wait_for(self._channel.send(payload), timeout=self._timeout)
        except TimeoutError as e:
            raise GatewayTimeoutError(
                f"Background script request timed out after {int(self._timeout * 1000)}ms"
            ) from e
        except ValueError as e:
            raise RemoteError(f"JSON parse error: {e}") from e

        if not isinstance(response, Mapping):
            raise RemoteError("Invalid response from background script", retryable=True)

        error = response.get("error")
        if error:
            message = str(error)
            raise RemoteError(
                message, retryable=not matches_any(message, NON_RETRYABLE_GATEWAY_MESSAGES)
            )
        if validate is not None:
            validate(response)
        return dict(response)

    async def request(
        self, payload: dict[str, Any], validate: Validator | None = None
    ) -> dict[str, Any]:
        """Send a request and wait for its response.

        ``validate`` may reject a response shape by raising a retryable
        RemoteError.

        Raises:
            GatewayTimeoutError: No answer within the timeout.
            ChannelClosedError: Nothing is listening.
            RemoteError: The delivery process answered with an error.
        """
        attempt = 1
        while True:
            try:
                return await self._send_once(payload, validate)
            except RemoteError as e:
                if not e.retryable:
                    logger.error("Non-retryable error from delivery process: %s", e)
                    raise
                if self._policy.is_final(attempt):
                    logger.error("Request failed after %d attempts: %s", attempt, e)
                    raise
                delay = self._policy.delay_for(attempt)
                logger.warning(
                    "Attempt %d/%d failed: %s. Retrying in %.0fms",
                    attempt,
                    self._policy.max_attempts,
                    e,
                    delay * 1000,
                )
                await self._sleep(delay)
                attempt += 1

    async def get_rules(self, url: str) -> RuleSet:
        """Fetch the rule set for a page URL.

        Raises:
            GatewayError: See ``request``.
        """
        response = await self.request(
            {"action": GET_ADVANCED_BLOCKING_DATA, "url": url}, validate=_metadata_payload
        )
        return RuleSet.from_dict(_metadata_payload(response))

    async def report_scriptlet_error(self, report: ScriptletErrorReport) -> None:
        """One-way error report; failures are only logged."""
        try:
            await asyncio.wait_for(self._channel.post(report.to_message()), timeout=self._timeout)
        except Exception as e:
            logger.warning("Could not report scriptlet error for %s: %s", report.scriptlet_name, e)
