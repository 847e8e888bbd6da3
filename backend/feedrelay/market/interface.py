"""Abstract interfaces for the relay's external collaborators."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from .models import EventCategory, FeedInstrumentHandle, InstrumentDescriptor

EventHandler = Callable[[EventCategory, Any], Awaitable[None]]


class MarketFeed(ABC):
    """Contract for upstream market data feeds.

    Implementations push raw events to the handler given to start(). The
    relay never polls the feed; it only asks it to subscribe or unsubscribe.

    Lifecycle:
        feed = create_market_feed(settings)
        await feed.start(router.handle)
        # ... relay runs ...
        await feed.subscribe(handle)
        await feed.unsubscribe(handle)
        # ... shutting down ...
        await feed.stop()
    """

    @abstractmethod
    async def start(self, on_event: EventHandler) -> None:
        """Connect and begin delivering events to ``on_event``.

        Must be called exactly once.
        """

    @abstractmethod
    async def stop(self) -> None:
        """Disconnect and release resources. Safe to call multiple times."""

    @abstractmethod
    async def subscribe(self, handle: FeedInstrumentHandle) -> dict[str, Any]:
        """Subscribe to an instrument. Returns the feed's result fields.

        Raises SubscriptionFailure if the feed rejects the request.
        """

    @abstractmethod
    async def unsubscribe(self, handle: FeedInstrumentHandle) -> dict[str, Any]:
        """Unsubscribe from an instrument. Returns the feed's result fields.

        Raises SubscriptionFailure if the feed rejects the request, including
        when the instrument was never subscribed.
        """


class InstrumentLookup(ABC):
    """Resolves client descriptors into feed instrument handles."""

    @abstractmethod
    async def resolve(self, descriptor: InstrumentDescriptor) -> FeedInstrumentHandle:
        """Raises LookupFailure if the descriptor cannot be resolved."""

    async def close(self) -> None:
        """Release any resources held by the lookup."""


class RecordSink(ABC):
    """Append-only structured record writer for one log category."""

    name: str

    def start(self) -> None:
        """Begin accepting records. Called once the event loop is running."""

    @abstractmethod
    def write(self, record: dict[str, Any]) -> None:
        """Queue a record for appending. Never blocks."""

    @abstractmethod
    def end(self) -> None:
        """Signal that no more records will be written."""

    @abstractmethod
    async def wait_closed(self) -> None:
        """Wait until every queued record is flushed and the sink is closed.

        Raises SinkFailure if writing or closing failed.
        """


class ClientConnection(Protocol):
    """The part of a downstream connection the relay uses."""

    async def send_json(self, data: Any) -> None: ...
