"""Exception hierarchy for the market data relay."""

from __future__ import annotations

from typing import Any


class RelayError(Exception):
    """Base exception for all relay errors."""


class LookupFailure(RelayError):
    """An instrument descriptor could not be resolved to a feed handle."""

    def __init__(self, message: str, fields: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.fields: dict[str, Any] = dict(fields or {})


class SubscriptionFailure(RelayError):
    """The upstream feed rejected a subscribe or unsubscribe request.

    ``fields`` carries whatever partial data the feed returned (name,
    exchangeInstrumentID, type, description) so it can be logged and shown
    to the requesting client.
    """

    def __init__(self, message: str, fields: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.fields: dict[str, Any] = dict(fields or {})


class MalformedEventError(RelayError):
    """An upstream event payload could not be parsed."""


class InvalidClientMessage(RelayError):
    """A downstream client sent a message the relay does not understand."""


class SinkFailure(RelayError):
    """A durable log sink failed to write or close."""


class FeedError(RelayError):
    """Login or connection to the upstream feed failed."""
