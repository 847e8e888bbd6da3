"""Fakes and fixtures for relay tests.

The fakes stand in for the relay's external collaborators: downstream
connections, the upstream feed and the durable log sinks.
"""

import asyncio
from typing import Any

import pytest

from feedrelay.market.clients import ClientRegistry
from feedrelay.market.directory import InstrumentDirectory
from feedrelay.market.exceptions import SinkFailure, SubscriptionFailure
from feedrelay.market.interface import MarketFeed, RecordSink
from feedrelay.market.lookup import StaticInstrumentLookup
from feedrelay.market.models import FeedInstrumentHandle
from feedrelay.market.sinks import LogSinks


class FakeConnection:
    """Downstream connection that records what it was sent."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[Any] = []
        self.attempts = 0
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        self.attempts += 1
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(data)


class MemorySink(RecordSink):
    """Sink that keeps records in a list."""

    def __init__(self, name: str = "memory", fail_close: bool = False, hang: bool = False) -> None:
        self.name = name
        self.records: list[dict[str, Any]] = []
        self.started = False
        self.ended = False
        self.fail_close = fail_close
        self.hang = hang

    def start(self) -> None:
        self.started = True

    def write(self, record: dict[str, Any]) -> None:
        self.records.append(dict(record))

    def end(self) -> None:
        self.ended = True

    async def wait_closed(self) -> None:
        if self.hang:
            await asyncio.Event().wait()
        if self.fail_close:
            raise SinkFailure(f"{self.name}: disk full")


class FakeFeed(MarketFeed):
    """Feed that accepts any subscription and rejects unknown unsubscriptions."""

    def __init__(self, start_error: Exception | None = None) -> None:
        self.subscribed: set[int] = set()
        self.requests: list[tuple[str, int]] = []
        self.on_event = None
        self.started = False
        self.stopped = False
        self._start_error = start_error

    async def start(self, on_event) -> None:
        if self._start_error is not None:
            raise self._start_error
        self.on_event = on_event
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    async def subscribe(self, handle: FeedInstrumentHandle) -> dict[str, Any]:
        self.requests.append(("subscribe", handle.exchange_instrument_id))
        self.subscribed.add(handle.exchange_instrument_id)
        return {**handle.to_dict(), "type": "success"}

    async def unsubscribe(self, handle: FeedInstrumentHandle) -> dict[str, Any]:
        self.requests.append(("unsubscribe", handle.exchange_instrument_id))
        if handle.exchange_instrument_id not in self.subscribed:
            raise SubscriptionFailure(
                "Instrument not subscribed",
                fields={**handle.to_dict(), "type": "error"},
            )
        self.subscribed.discard(handle.exchange_instrument_id)
        return {**handle.to_dict(), "type": "success"}


def make_memory_sinks() -> LogSinks:
    return LogSinks(
        candle=MemorySink("candle"),
        ltp=MemorySink("ltp"),
        market_depth=MemorySink("marketdepth"),
        subscriptions=MemorySink("sub_unsub"),
    )


@pytest.fixture
def make_connection():
    return FakeConnection


@pytest.fixture
def memory_sinks() -> LogSinks:
    return make_memory_sinks()


@pytest.fixture
def directory() -> InstrumentDirectory:
    return InstrumentDirectory()


@pytest.fixture
def clients() -> ClientRegistry:
    return ClientRegistry()


@pytest.fixture
def feed() -> FakeFeed:
    return FakeFeed()


@pytest.fixture
def lookup() -> StaticInstrumentLookup:
    return StaticInstrumentLookup()


@pytest.fixture
def make_sink():
    return MemorySink


@pytest.fixture
def make_feed():
    return FakeFeed
