"""
Exception hierarchy for webshield.

Engine errors describe the privileged engine link, fetch errors what the
request coordinator reports after its retry policy, gateway errors the
page-side channel to the delivery process.
"""

from __future__ import annotations

from .retry import NON_RETRYABLE_ENGINE_MESSAGES, matches_any


class WebShieldError(Exception):
    """Base class for all webshield errors."""


# === Engine ===


class EngineError(WebShieldError):
    """Failure talking to the privileged rule engine."""

    retryable = True


class EngineNotConnectedError(EngineError):
    """The engine socket could not be reached at all."""

    retryable = False


class EngineConnectionLostError(EngineError):
    """The engine closed the connection in the middle of an exchange."""


class EngineTimeoutError(EngineError):
    """The engine did not answer in time."""


class MalformedResponseError(EngineError):
    """The engine answered with something that is not a valid payload."""

    retryable = False


class EngineReportedError(EngineError):
    """The engine answered with an explicit error message."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = not matches_any(message, NON_RETRYABLE_ENGINE_MESSAGES)


# === Coordinator ===


class FetchError(WebShieldError):
    """The coordinator could not produce a rule set."""


class FetchExhaustedError(FetchError):
    """Every attempt failed with a retryable error."""

    def __init__(self, url: str, attempts: int, last_error: Exception | None) -> None:
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.url = url
        self.attempts = attempts
        self.last_error = last_error


class NonRetryableFetchError(FetchError):
    """An attempt failed with an error that retrying cannot fix."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


# === Gateway ===


class GatewayError(WebShieldError):
    """The page could not obtain a response from the delivery process."""

    retryable = False


class GatewayTimeoutError(GatewayError):
    """The delivery process did not answer within the request timeout."""


class ChannelClosedError(GatewayError):
    """There is no delivery process listening on the channel."""


class RemoteError(GatewayError):
    """The delivery process answered with an error."""

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable
