"""Error taxonomy for the inbound ingestion subsystem."""

from __future__ import annotations

from typing import Optional


class InboundError(Exception):
    """Base class for all ingestion errors."""


class ChannelConnectionError(InboundError, ConnectionError):
    """Transport or session failure on a provider channel.

    Triggers reconnect/backoff in the IMAP supervisor and is logged per cycle
    by the SMS poller. Never crashes the process.
    """


class ProviderRateLimited(ChannelConnectionError):
    """Provider refused the request because of throttling."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class AuthenticationFailed(ChannelConnectionError):
    """Provider rejected the configured credentials."""


class ChannelDisabled(InboundError):
    """Raised when a supervisor has exhausted its reconnect attempts."""


class NoMatchingCorrespondent(InboundError):
    """Sender identifier does not resolve to any record."""

    def __init__(self, identifier: str) -> None:
        super().__init__(f"No correspondent found for {identifier!r}")
        self.identifier = identifier


class DuplicateDetected(InboundError):
    """Message was already ingested."""

    def __init__(self, strategy: str, key: str) -> None:
        super().__init__(f"Duplicate detected by {strategy}: {key}")
        self.strategy = strategy
        self.key = key


class ContentExtractionFailure(InboundError):
    """Body could not be decoded. Callers degrade to the sentinel body."""


class PersistenceFailure(InboundError):
    """Writing to the record store failed."""


__all__ = [
    "AuthenticationFailed",
    "ChannelConnectionError",
    "ChannelDisabled",
    "ContentExtractionFailure",
    "DuplicateDetected",
    "InboundError",
    "NoMatchingCorrespondent",
    "PersistenceFailure",
    "ProviderRateLimited",
]
