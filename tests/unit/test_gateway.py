"""Unit tests for the page-side messaging gateway."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

RULES_RESPONSE = {
    "data": {"metadataPayload": {"cssInject": ["a {}"], "source": "fresh-fetch"}},
    "source": "fresh-fetch",
}


def _gateway(channel: Any, **kwargs: Any):
    from webshield.page.gateway import MessagingGateway
    from webshield.retry import RetryPolicy

    kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, rng=lambda: 0.0))
    kwargs.setdefault("sleep", AsyncMock())
    return MessagingGateway(channel, **kwargs)


def _channel(*responses: Any) -> MagicMock:
    channel = MagicMock()
    channel.send = AsyncMock(side_effect=list(responses))
    channel.post = AsyncMock()
    return channel


class TestMessagingGateway:
    """Tests for MessagingGateway."""

    @pytest.mark.asyncio
    async def test_get_rules(self) -> None:
        """Test that the metadata payload becomes a rule set."""
        channel = _channel(RULES_RESPONSE)
        rule_set = await _gateway(channel).get_rules("https://example.com/")

        assert rule_set.css_inject == ("a {}",)
        channel.send.assert_awaited_once_with(
            {"action": "getAdvancedBlockingData", "url": "https://example.com/"}
        )

    @pytest.mark.asyncio
    async def test_retryable_error_then_success(self) -> None:
        """Test that transient remote errors are retried with backoff."""
        sleep = AsyncMock()
        channel = _channel({"error": "Temporary glitch"}, RULES_RESPONSE)

        rule_set = await _gateway(channel, sleep=sleep).get_rules("https://example.com/")

        assert rule_set.css_inject == ("a {}",)
        assert channel.send.await_count == 2
        sleep.assert_awaited_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "message",
        [
            "URL is required and must be http/https",
            "Native host request failed: timeout",
            "Engine not connected: no socket",
        ],
    )
    async def test_terminal_errors_are_not_retried(self, message: str) -> None:
        """Test that terminal remote errors fail on the first attempt."""
        from webshield.exceptions import RemoteError

        channel = _channel({"error": message}, RULES_RESPONSE)
        with pytest.raises(RemoteError) as exc_info:
            await _gateway(channel).request({"action": "getAdvancedBlockingData"})

        assert exc_info.value.message == message
        assert exc_info.value.retryable is False
        assert channel.send.await_count == 1

    @pytest.mark.asyncio
    async def test_invalid_url_error_single_attempt(self) -> None:
        """Test that an invalid URL answer is final."""
        from webshield.exceptions import RemoteError

        channel = _channel({"error": "Invalid URL"}, RULES_RESPONSE)
        with pytest.raises(RemoteError):
            await _gateway(channel).get_rules("https://example.com/")
        assert channel.send.await_count == 1

    @pytest.mark.asyncio
    async def test_missing_payload_is_retried_then_fails(self) -> None:
        """Test that a response without metadataPayload is retried."""
        from webshield.exceptions import RemoteError

        channel = _channel({"data": {}}, {"data": None}, {})
        with pytest.raises(RemoteError, match="metadataPayload"):
            await _gateway(channel).get_rules("https://example.com/")
        assert channel.send.await_count == 3

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        """Test that a silent delivery process times out without retry."""
        from webshield.exceptions import GatewayTimeoutError

        async def never(message: dict[str, Any]) -> None:
            await asyncio.sleep(10)

        channel = MagicMock()
        channel.send = AsyncMock(side_effect=never)

        with pytest.raises(GatewayTimeoutError, match="timed out after 10ms"):
            await _gateway(channel, timeout=0.01).get_rules("https://example.com/")
        assert channel.send.await_count == 1

    @pytest.mark.asyncio
    async def test_channel_closed(self) -> None:
        """Test that a missing receiver surfaces as ChannelClosedError."""
        from webshield.exceptions import ChannelClosedError

        channel = MagicMock()
        channel.send = AsyncMock(side_effect=ChannelClosedError("Receiving end does not exist"))

        with pytest.raises(ChannelClosedError):
            await _gateway(channel).get_rules("https://example.com/")
        assert channel.send.await_count == 1

    @pytest.mark.asyncio
    async def test_report_scriptlet_error_swallows_failures(self) -> None:
        """Test that a failed error report is only logged."""
        from webshield.exceptions import ChannelClosedError
        from webshield.protocol.messages import ScriptletErrorReport

        channel = MagicMock()
        channel.post = AsyncMock(side_effect=ChannelClosedError("gone"))
        report = ScriptletErrorReport("json-prune", "bad", url="https://example.com/")

        await _gateway(channel).report_scriptlet_error(report)

        channel.post.assert_awaited_once_with(report.to_message())


class TestLocalChannel:
    """Tests for the in-process channel."""

    @pytest.mark.asyncio
    async def test_end_to_end_in_process(self) -> None:
        """Test gateway -> service -> coordinator -> bridge in one process."""
        from webshield.daemon.coordinator import RuleCoordinator
        from webshield.daemon.service import DeliveryService
        from webshield.engine.bridge import EnginePayload
        from webshield.models import RuleSource
        from webshield.page.gateway import LocalChannel

        bridge = MagicMock()
        bridge.fetch_rules = AsyncMock(
            return_value=EnginePayload(
                data={"scriptlets": [{"name": "nowebrtc", "args": []}]}
            )
        )
        service = DeliveryService(RuleCoordinator(bridge))
        gateway = _gateway(LocalChannel(service))

        first = await gateway.get_rules("https://example.com/")
        second = await gateway.get_rules("https://example.com/")

        assert [s.name for s in first.scriptlets] == ["nowebrtc"]
        assert first.source is RuleSource.FRESH_FETCH
        assert second.source is RuleSource.CACHE
        assert bridge.fetch_rules.await_count == 1

    @pytest.mark.asyncio
    async def test_invalid_url_through_service(self) -> None:
        """Test that the service's invalid URL answer ends the request."""
        from webshield.daemon.service import DeliveryService
        from webshield.exceptions import RemoteError
        from webshield.page.gateway import LocalChannel

        coordinator = MagicMock()
        coordinator.resolve = AsyncMock()
        gateway = _gateway(LocalChannel(DeliveryService(coordinator)))

        with pytest.raises(RemoteError, match="URL is required"):
            await gateway.get_rules("about:blank")
        coordinator.resolve.assert_not_awaited()
