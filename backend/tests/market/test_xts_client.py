"""Tests for the XTS feed client and instrument lookup (mocked transport)."""

import json
from importlib.metadata import version

import httpx
import pytest

from feedrelay.market import xts_client
from feedrelay.market.exceptions import FeedError, LookupFailure, SubscriptionFailure
from feedrelay.market.models import EventCategory, FeedInstrumentHandle, InstrumentDescriptor
from feedrelay.market.xts_client import XtsInstrumentLookup, XtsMarketFeed

API_URL = "https://xts.test"

NIFTY = FeedInstrumentHandle(exchange_segment=1, exchange_instrument_id=26000, instrument_type=8, name="NIFTY")

SEARCH_RESULTS = [
    {"ExchangeSegment": 2, "ExchangeInstrumentID": 35001, "InstrumentType": 1, "Name": "NIFTY",
     "DisplayName": "NIFTY 25JAN2024", "Series": "FUTIDX", "ContractExpiration": "2024-01-25T14:30:00"},
    {"ExchangeSegment": 2, "ExchangeInstrumentID": 40001, "InstrumentType": 2, "Name": "NIFTY",
     "DisplayName": "NIFTY 25JAN2024 CE 19500", "Series": "OPTIDX", "ContractExpiration": "2024-01-25T14:30:00",
     "StrikePrice": 19500, "OptionType": 3},
    {"ExchangeSegment": 2, "ExchangeInstrumentID": 40002, "InstrumentType": 2, "Name": "NIFTY",
     "DisplayName": "NIFTY 25JAN2024 PE 19500", "Series": "OPTIDX", "ContractExpiration": "2024-01-25T14:30:00",
     "StrikePrice": 19500, "OptionType": 4},
    {"ExchangeSegment": 1, "ExchangeInstrumentID": 26000, "InstrumentType": 8, "Name": "NIFTY",
     "DisplayName": "NIFTY", "Series": "EQ"},
]


class FakeXts:
    """In-process stand-in for the XTS REST API."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.reject_subscription: str | None = None
        self.reject_codes: set[int] = set()
        self.reject_rollback = False
        self.search_results: list = SEARCH_RESULTS
        self.login_ok = True

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/apimarketdata/auth/login":
            if not self.login_ok:
                return httpx.Response(400, json={"type": "error", "description": "Invalid app key"})
            return httpx.Response(200, json={
                "type": "success",
                "result": {"token": "tok-123", "userID": "U1"},
            })
        if path == "/apimarketdata/instruments/subscription":
            code = json.loads(request.content)["xtsMessageCode"]
            rejected = (request.method == "POST" and code in self.reject_codes) or (
                request.method == "PUT" and self.reject_rollback
            )
            if rejected:
                return httpx.Response(400, json={
                    "type": "error", "code": "e-sub-0003", "description": f"code {code} unavailable",
                })
            if self.reject_subscription:
                return httpx.Response(400, json={
                    "type": "error", "code": "e-session-0002", "description": self.reject_subscription,
                })
            return httpx.Response(200, json={"type": "success", "code": "s-sub-0001", "description": "ok"})
        if path == "/apimarketdata/search/instruments":
            return httpx.Response(200, json={"type": "success", "result": self.search_results})
        return httpx.Response(404, text="not found")


class RecordingSocket:
    """Stand-in for socketio.AsyncClient that records the connection."""

    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs
        self.handlers: dict = {}
        self.connected = False
        self.url: str | None = None
        self.connect_kwargs: dict = {}

    def on(self, event, handler=None):
        def register(func):
            self.handlers[event] = func
            return func

        return register(handler) if handler is not None else register

    def event(self, func):
        self.handlers[func.__name__] = func
        return func

    async def connect(self, url, **kwargs) -> None:
        self.url = url
        self.connect_kwargs = kwargs
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

def _feed(fake: FakeXts) -> XtsMarketFeed:
    client = httpx.AsyncClient(base_url=API_URL, transport=httpx.MockTransport(fake))
    return XtsMarketFeed(api_url=API_URL, app_key="key", secret_key="secret", http_client=client)


@pytest.mark.asyncio
class TestXtsMarketFeed:
    """REST session and subscription requests."""

    async def test_login_stores_token(self):
        fake = FakeXts()
        feed = _feed(fake)
        await feed.login()

        body = json.loads(fake.requests[0].content)
        assert body == {"appKey": "key", "secretKey": "secret", "source": "WEBAPI"}
        assert feed._token == "tok-123"
        assert "token=tok-123" in feed._socket_url()
        assert "userID=U1" in feed._socket_url()

    async def test_login_rejected(self):
        fake = FakeXts()
        fake.login_ok = False
        with pytest.raises(FeedError):
            await _feed(fake).login()

    async def test_subscribe_requests_every_message_code(self):
        fake = FakeXts()
        feed = _feed(fake)
        await feed.login()

        response = await feed.subscribe(NIFTY)

        sub_requests = [r for r in fake.requests if r.url.path.endswith("/subscription")]
        assert [r.method for r in sub_requests] == ["POST", "POST", "POST"]
        assert [json.loads(r.content)["xtsMessageCode"] for r in sub_requests] == [1502, 1505, 1512]
        assert all(r.headers["authorization"] == "tok-123" for r in sub_requests)
        assert json.loads(sub_requests[0].content)["instruments"] == [
            {"exchangeSegment": 1, "exchangeInstrumentID": 26000}
        ]
        assert response["type"] == "success"
        assert response["name"] == "NIFTY"
        assert response["exchangeInstrumentID"] == 26000

    async def test_unsubscribe_uses_put(self):
        fake = FakeXts()
        feed = _feed(fake)
        await feed.login()

        await feed.unsubscribe(NIFTY)

        assert {r.method for r in fake.requests if r.url.path.endswith("/subscription")} == {"PUT"}

    async def test_rejection_raises_subscription_failure(self):
        fake = FakeXts()
        fake.reject_subscription = "Instrument not subscribed"
        feed = _feed(fake)
        await feed.login()

        with pytest.raises(SubscriptionFailure) as info:
            await feed.unsubscribe(NIFTY)

        assert str(info.value) == "Instrument not subscribed"
        assert info.value.fields["type"] == "error"
        assert info.value.fields["name"] == "NIFTY"
        assert info.value.fields["code"] == "e-session-0002"

    async def test_transport_error_raises_subscription_failure(self):
        def offline(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(base_url=API_URL, transport=httpx.MockTransport(offline))
        feed = XtsMarketFeed(api_url=API_URL, app_key="k", secret_key="s", http_client=client)

        with pytest.raises(SubscriptionFailure) as info:
            await feed.subscribe(NIFTY)
        assert info.value.fields["exchangeInstrumentID"] == 26000

    async def test_non_json_response_is_a_failure(self):
        def html(request):
            return httpx.Response(502, text="<html>Bad gateway</html>")

        client = httpx.AsyncClient(base_url=API_URL, transport=httpx.MockTransport(html))
        feed = XtsMarketFeed(api_url=API_URL, app_key="k", secret_key="s", http_client=client)

        with pytest.raises(SubscriptionFailure):
            await feed.subscribe(NIFTY)

    async def test_socket_handler_forwards_category(self):
        received = []

        async def on_event(category, raw):
            received.append((category, raw))

        feed = _feed(FakeXts())
        feed._on_event = on_event
        handler = feed._make_handler(EventCategory.LTP)
        await handler('{"ExchangeInstrumentID": 26000}')

        assert received == [(EventCategory.LTP, '{"ExchangeInstrumentID": 26000}')]

    async def test_partial_subscribe_is_rolled_back(self):
        """A code rejected after others were accepted unsubscribes those again."""
        fake = FakeXts()
        fake.reject_codes = {1505}
        feed = _feed(fake)
        await feed.login()

        with pytest.raises(SubscriptionFailure) as info:
            await feed.subscribe(NIFTY)

        sub_requests = [
            (r.method, json.loads(r.content)["xtsMessageCode"])
            for r in fake.requests
            if r.url.path.endswith("/subscription")
        ]
        assert sub_requests == [("POST", 1502), ("POST", 1505), ("PUT", 1502)]
        assert info.value.fields["xtsMessageCode"] == 1505
        assert "stillSubscribed" not in info.value.fields

    async def test_failed_rollback_is_recorded(self):
        fake = FakeXts()
        fake.reject_codes = {1512}
        fake.reject_rollback = True
        feed = _feed(fake)
        await feed.login()

        with pytest.raises(SubscriptionFailure) as info:
            await feed.subscribe(NIFTY)

        assert info.value.fields["xtsMessageCode"] == 1512
        assert info.value.fields["stillSubscribed"] == [1502, 1505]

    async def test_first_code_rejected_needs_no_rollback(self):
        fake = FakeXts()
        fake.reject_codes = {1502}
        feed = _feed(fake)
        await feed.login()

        with pytest.raises(SubscriptionFailure):
            await feed.subscribe(NIFTY)

        assert [r.method for r in fake.requests if r.url.path.endswith("/subscription")] == ["POST"]

    async def test_start_connects_socket(self, monkeypatch):
        monkeypatch.setattr(xts_client.socketio, "AsyncClient", RecordingSocket)
        feed = _feed(FakeXts())

        async def on_event(category, raw):
            pass

        await feed.start(on_event)
        socket = feed._sio

        assert feed.connected
        assert socket.url.startswith(f"{API_URL}/?")
        assert "token=tok-123" in socket.url
        assert "publishFormat=JSON" in socket.url
        assert socket.connect_kwargs == {"socketio_path": "/apimarketdata/socket.io", "transports": ["websocket"]}
        assert {c.value for c in EventCategory} <= set(socket.handlers)
        assert {"connect", "disconnect", "connect_error", "joined"} <= set(socket.handlers)

        await feed.stop()
        assert not socket.connected

    async def test_stop_without_start(self):
        feed = _feed(FakeXts())
        await feed.stop()  # Should not raise
        assert not feed.connected


@pytest.mark.asyncio
class TestXtsInstrumentLookup:
    """Descriptor resolution against search results."""

    async def test_cash_instrument_preferred(self):
        fake = FakeXts()
        feed = _feed(fake)
        await feed.login()
        lookup = XtsInstrumentLookup(feed)

        handle = await lookup.resolve(InstrumentDescriptor(symbol="NIFTY", exchange="NSE"))

        assert handle == FeedInstrumentHandle(exchange_segment=1, exchange_instrument_id=26000, instrument_type=8, name="NIFTY")
        search = fake.requests[-1]
        assert search.url.params["searchString"] == "NIFTY"
        assert search.headers["authorization"] == "tok-123"

    async def test_option_contract(self):
        feed = _feed(FakeXts())
        lookup = XtsInstrumentLookup(feed)

        handle = await lookup.resolve(InstrumentDescriptor(
            symbol="NIFTY", exchange="NSE", expiry="2024-01-25", strike=19500.0, option_type="PE",
        ))

        assert handle.exchange_instrument_id == 40002
        assert handle.name == "NIFTY 25JAN2024 PE 19500"

    async def test_series_filter(self):
        lookup = XtsInstrumentLookup(_feed(FakeXts()))
        handle = await lookup.resolve(InstrumentDescriptor(symbol="NIFTY", exchange="NSEFO", series="FUTIDX"))
        assert handle.exchange_instrument_id == 35001

    async def test_no_match(self):
        lookup = XtsInstrumentLookup(_feed(FakeXts()))
        with pytest.raises(LookupFailure):
            await lookup.resolve(InstrumentDescriptor(symbol="NIFTY", exchange="NSE", strike=1.0))

    async def test_unknown_exchange(self):
        fake = FakeXts()
        lookup = XtsInstrumentLookup(_feed(fake))
        with pytest.raises(LookupFailure) as info:
            await lookup.resolve(InstrumentDescriptor(symbol="NIFTY", exchange="NYSE"))
        assert info.value.fields["name"] == "NIFTY"
        assert fake.requests == []

    async def test_results_are_cached(self):
        fake = FakeXts()
        lookup = XtsInstrumentLookup(_feed(fake))
        descriptor = InstrumentDescriptor(symbol="NIFTY", exchange="NSE")

        first = await lookup.resolve(descriptor)
        second = await lookup.resolve(descriptor)

        assert first is second
        assert len(fake.requests) == 1

    async def test_result_without_instrument_id(self):
        """A search hit missing its id is a lookup failure, not a crash."""
        fake = FakeXts()
        fake.search_results = [{"ExchangeSegment": 1, "Name": "NIFTY"}]
        lookup = XtsInstrumentLookup(_feed(fake))

        with pytest.raises(LookupFailure) as info:
            await lookup.resolve(InstrumentDescriptor(symbol="NIFTY", exchange="NSE"))
        assert info.value.fields == {"name": "NIFTY", "type": "error"}

    async def test_result_with_non_numeric_id(self):
        fake = FakeXts()
        fake.search_results = [{"ExchangeSegment": 1, "Name": "NIFTY", "ExchangeInstrumentID": "n/a"}]
        lookup = XtsInstrumentLookup(_feed(fake))

        with pytest.raises(LookupFailure):
            await lookup.resolve(InstrumentDescriptor(symbol="NIFTY", exchange="NSE"))

    async def test_malformed_result_list(self):
        fake = FakeXts()
        fake.search_results = {"unexpected": "shape"}
        lookup = XtsInstrumentLookup(_feed(fake))

        with pytest.raises(LookupFailure):
            await lookup.resolve(InstrumentDescriptor(symbol="NIFTY", exchange="NSE"))


class TestSocketProtocol:
    """The broker's socket.io endpoint speaks Engine.IO protocol 3."""

    def test_client_library_speaks_engineio_3(self):
        assert version("python-engineio").split(".")[0] == "3"
        assert version("python-socketio").split(".")[0] == "4"
