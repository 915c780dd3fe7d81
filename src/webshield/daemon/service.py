"""
Delivery process: answers page requests and follows engine notifications.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any

from ..config import ShieldConfig
from ..exceptions import EngineError, FetchExhaustedError, NonRetryableFetchError
from ..protocol.messages import (
    GET_ADVANCED_BLOCKING_DATA,
    PONG,
    REPORT_SCRIPTLET_ERROR,
    RULES_UPDATED,
    ScriptletErrorReport,
    decode,
    encode,
)
from ..protocol.transport import ClientConnection, get_server

if TYPE_CHECKING:
    from ..engine.bridge import EngineBridge
    from .coordinator import RuleCoordinator
    from .preloader import Preloader

logger = logging.getLogger(__name__)

INVALID_URL_ERROR = "URL is required and must be http/https"


class DeliveryService:
    """Message handlers of the delivery process."""

    def __init__(
        self,
        coordinator: RuleCoordinator,
        bridge: EngineBridge | None = None,
        preloader: Preloader | None = None,
        config: ShieldConfig | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.config = config or ShieldConfig()
        self._bridge = bridge
        self._preloader = preloader
        self._listener: asyncio.Task[None] | None = None
        self.engine_connected = False

    async def handle_message(self, message: dict[str, Any]) -> dict[str, Any] | None:
        """Handle one page message.

        Returns:
            The response, or None for one-way messages.
        """
        action = message.get("action")

        if action == GET_ADVANCED_BLOCKING_DATA:
            return await self._get_blocking_data(message.get("url"))

        if action == REPORT_SCRIPTLET_ERROR:
            detail = message.get("detail")
            report = ScriptletErrorReport.from_detail(detail if isinstance(detail, dict) else {})
            logger.error(
                "Scriptlet '%s' failed on %s: %s\n%s",
                report.scriptlet_name,
                report.url[:100] or "unknown page",
                report.error_message,
                report.error_stack,
            )
            return None

        logger.warning("Unknown action from page: %r", action)
        return {"error": f"Unknown action: {action}"}

    async def _get_blocking_data(self, url: Any) -> dict[str, Any]:
        if not isinstance(url, str) or not url.startswith("http"):
            logger.warning("Received invalid URL for %s: %r", GET_ADVANCED_BLOCKING_DATA, url)
            return {"error": INVALID_URL_ERROR}

        try:
            rule_set = await self.coordinator.resolve(url)
        except NonRetryableFetchError as e:
            return {"error": e.reason}
        except FetchExhaustedError as e:
            return {"error": f"Native host request failed: {e.last_error}"}
        except Exception as e:
            logger.exception("Unexpected error resolving %s", url[:100])
            return {"error": str(e) or type(e).__name__}

        return {
            "data": {"metadataPayload": rule_set.to_dict()},
            "source": rule_set.source.value,
        }

    async def handle_engine_message(self, message: dict[str, Any]) -> None:
        """Handle an unsolicited engine message."""
        action = message.get("action")

        if action == RULES_UPDATED:
            logger.info("Engine rules updated, clearing caches")
            self.coordinator.invalidate()
            if self.config.refresh_pinned_on_update and self._preloader is not None:
                self._preloader.warm_in_background(self.coordinator.pinned.hosts)
        elif action == PONG:
            logger.debug("Received pong from engine")
            self.engine_connected = True
        else:
            logger.warning("Unhandled engine message: %r", message)

    async def start(self) -> None:
        """Warm pinned hosts and start following engine notifications."""
        if self._preloader is not None and self.coordinator.pinned.hosts:
            self._preloader.warm_in_background(self.coordinator.pinned.hosts)
        if self._bridge is not None and self._listener is None:
            self._listener = asyncio.create_task(self._listen_forever(self._bridge))

    async def _listen_forever(self, bridge: EngineBridge) -> None:
        while True:
            try:
                self.engine_connected = True
                await bridge.listen(self.handle_engine_message)
            except (EngineError, ConnectionError, OSError) as e:
                logger.warning("Engine notification listener failed: %s", e)
            self.engine_connected = False
            logger.debug(
                "Reconnecting to engine in %.1fs", self.config.engine_reconnect_delay
            )
            await asyncio.sleep(self.config.engine_reconnect_delay)

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener
            self._listener = None
        if self._preloader is not None:
            await self._preloader.close()
        await self.coordinator.close()


class DeliveryServer:
    """Serves DeliveryService over a Unix socket, one JSON object per line."""

    def __init__(self, service: DeliveryService, name: str = "delivery") -> None:
        self._service = service
        self._server = get_server(name, self._handle_connection)

    @property
    def address(self) -> str:
        return self._server.get_address()

    async def start(self) -> None:
        await self._server.start()
        logger.info("Delivery process listening on %s", self.address)

    async def close(self) -> None:
        await self._server.close()

    async def _handle_connection(self, connection: ClientConnection) -> None:
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

                response = await self._service.handle_message(message)
                if response is not None:
                    await connection.send_line(encode(response))
        except (ConnectionError, OSError) as e:
            logger.debug("Page client disconnected: %s", e)
        finally:
            await connection.close()
