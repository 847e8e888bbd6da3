"""XTS market data API client: REST for session and subscriptions, socket.io for events."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlencode

import httpx
import socketio

from .exceptions import FeedError, LookupFailure, SubscriptionFailure
from .interface import EventHandler, InstrumentLookup, MarketFeed
from .models import PROCESSED_CATEGORIES, EventCategory, FeedInstrumentHandle, InstrumentDescriptor

logger = logging.getLogger(__name__)

LOGIN_PATH = "/apimarketdata/auth/login"
SUBSCRIPTION_PATH = "/apimarketdata/instruments/subscription"
SEARCH_PATH = "/apimarketdata/search/instruments"
SOCKET_PATH = "/apimarketdata/socket.io"

# Exchange name -> XTS exchange segments, cash segment first
EXCHANGE_SEGMENTS: dict[str, tuple[int, ...]] = {
    "NSE": (1, 2),
    "NSECM": (1,),
    "NSEFO": (2,),
    "NSECD": (3,),
    "BSE": (11, 12),
    "BSECM": (11,),
    "BSEFO": (12,),
    "MCX": (51,),
    "MCXFO": (51,),
}

OPTION_TYPES: dict[str, int] = {"CE": 3, "PE": 4}


class XtsMarketFeed(MarketFeed):
    """MarketFeed backed by the XTS market data API.

    start() logs in over REST, then opens the socket.io stream and forwards
    every known event category to the handler. The broker runs Engine.IO
    protocol 3, which is why the client is the python-socketio 4.x line. Subscriptions are issued once
    per message code in ``message_codes`` (market depth, candle and LTP by
    default).
    """

    def __init__(
        self,
        api_url: str,
        app_key: str,
        secret_key: str,
        source: str = "WEBAPI",
        message_codes: tuple[int, ...] | None = None,
        http_client: httpx.AsyncClient | None = None,
        reconnection_delay_max: float = 10.0,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._app_key = app_key
        self._secret_key = secret_key
        self._source = source
        self._message_codes = message_codes or tuple(c.message_code for c in PROCESSED_CATEGORIES)
        self._http = http_client
        self._owns_http = http_client is None
        self._reconnection_delay_max = reconnection_delay_max
        self._token: str | None = None
        self._user_id: str | None = None
        self._sio: socketio.AsyncClient | None = None
        self._on_event: EventHandler | None = None

    @property
    def connected(self) -> bool:
        return bool(self._sio and self._sio.connected)

    async def start(self, on_event: EventHandler) -> None:
        self._on_event = on_event
        await self.login()

        self._sio = socketio.AsyncClient(
            reconnection=True,
            reconnection_delay_max=self._reconnection_delay_max,
        )
        self._register_handlers(self._sio)

        logger.info("Connecting socket with broker...")
        await self._sio.connect(
            self._socket_url(),
            socketio_path=SOCKET_PATH,
            transports=["websocket"],
        )

    async def stop(self) -> None:
        if self._sio is not None:
            await self._sio.disconnect()
            self._sio = None
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None
        self._token = None
        logger.info("XTS feed stopped")

    async def login(self) -> None:
        """Open a market data session. Raises FeedError on rejection."""
        try:
            body = await self._call("POST", LOGIN_PATH, json={
                "appKey": self._app_key,
                "secretKey": self._secret_key,
                "source": self._source,
            })
        except httpx.HTTPError as e:
            raise FeedError(f"XTS login failed: {e}") from e

        if body.get("type") != "success":
            raise FeedError(f"XTS login rejected: {body.get('description', body)}")
        result = body.get("result") or {}
        self._token = result.get("token")
        self._user_id = result.get("userID")
        if not self._token:
            raise FeedError("XTS login response had no token")
        logger.info("XTS market data session opened for %s", self._user_id)

    async def subscribe(self, handle: FeedInstrumentHandle) -> dict[str, Any]:
        return await self._subscription_request("POST", handle)

    async def unsubscribe(self, handle: FeedInstrumentHandle) -> dict[str, Any]:
        return await self._subscription_request("PUT", handle)

    async def get_json(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Authenticated GET, used by XtsInstrumentLookup."""
        return await self._call("GET", path, params=params)

    # --- Internal ---

    async def _subscription_request(self, method: str, handle: FeedInstrumentHandle) -> dict[str, Any]:
        """Issue the request for every message code; the first rejection fails it.

        A subscribe that fails part way is rolled back: the codes that were
        already accepted are unsubscribed again, so the instrument is never
        left half-subscribed upstream.
        """
        instrument = {
            "exchangeSegment": handle.exchange_segment,
            "exchangeInstrumentID": handle.exchange_instrument_id,
        }
        accepted: list[int] = []
        body: dict[str, Any] = {}
        for code in self._message_codes:
            try:
                body = await self._call(method, SUBSCRIPTION_PATH, json={
                    "instruments": [instrument],
                    "xtsMessageCode": code,
                })
            except httpx.HTTPError as e:
                fields = {**handle.to_dict(), "type": "error", "description": str(e), "xtsMessageCode": code}
                await self._abandon(method, instrument, accepted, fields)
                raise SubscriptionFailure(str(e) or type(e).__name__, fields=fields) from e

            if body.get("type") != "success":
                description = body.get("description") or "request rejected"
                fields = {
                    **handle.to_dict(),
                    "type": body.get("type", "error"),
                    "code": body.get("code"),
                    "description": description,
                    "xtsMessageCode": code,
                }
                await self._abandon(method, instrument, accepted, fields)
                raise SubscriptionFailure(description, fields=fields)
            accepted.append(code)

        return {
            **handle.to_dict(),
            "type": "success",
            "code": body.get("code"),
            "description": body.get("description"),
        }

    async def _abandon(
        self, method: str, instrument: dict[str, Any], accepted: list[int], fields: dict[str, Any]
    ) -> None:
        """Undo the codes a failed subscribe already got, recording what is still live."""
        if method != "POST" or not accepted:
            return
        still_subscribed = []
        for code in accepted:
            try:
                body = await self._call("PUT", SUBSCRIPTION_PATH, json={
                    "instruments": [instrument],
                    "xtsMessageCode": code,
                })
                undone = body.get("type") == "success"
            except httpx.HTTPError as e:
                logger.warning("Rollback of code %d for %s failed: %s", code, instrument, e)
                undone = False
            if not undone:
                still_subscribed.append(code)
        if still_subscribed:
            fields["stillSubscribed"] = still_subscribed
            logger.error("Instrument %s left subscribed for codes %s", instrument, still_subscribed)

    async def _call(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        if self._http is None:
            self._http = httpx.AsyncClient(base_url=self._api_url, timeout=10.0)
        headers = {"authorization": self._token} if self._token else {}
        response = await self._http.request(method, path, headers=headers, **kwargs)
        try:
            body = response.json()
        except ValueError as e:
            raise httpx.DecodingError(
                f"{method} {path}: non-JSON response (HTTP {response.status_code})"
            ) from e
        if not isinstance(body, dict):
            raise httpx.DecodingError(f"{method} {path}: unexpected response {body!r}")
        return body

    def _socket_url(self) -> str:
        query = urlencode({
            "token": self._token,
            "userID": self._user_id,
            "publishFormat": "JSON",
            "broadcastMode": "Full",
        })
        return f"{self._api_url}/?{query}"

    def _register_handlers(self, sio: socketio.AsyncClient) -> None:
        for category in EventCategory:
            sio.on(category.value, self._make_handler(category))

        @sio.event
        async def connect() -> None:
            logger.info("Connection with broker established")

        @sio.event
        async def disconnect() -> None:
            logger.warning("Broker socket disconnected")

        @sio.event
        async def connect_error(data: Any) -> None:
            logger.error("Broker socket error: %s", data)

        @sio.on("joined")
        async def joined(data: Any) -> None:
            logger.info("Joined event: %s", data)

    def _make_handler(self, category: EventCategory):
        async def handler(data: Any) -> None:
            if self._on_event is not None:
                await self._on_event(category, data)

        return handler


class XtsInstrumentLookup(InstrumentLookup):
    """Resolves descriptors with the XTS instrument search endpoint.

    Results are cached per descriptor for the life of the process.
    """

    def __init__(self, feed: XtsMarketFeed) -> None:
        self._feed = feed
        self._cache: dict[InstrumentDescriptor, FeedInstrumentHandle] = {}

    async def resolve(self, descriptor: InstrumentDescriptor) -> FeedInstrumentHandle:
        cached = self._cache.get(descriptor)
        if cached is not None:
            return cached

        segments = EXCHANGE_SEGMENTS.get(descriptor.exchange)
        if segments is None:
            raise LookupFailure(
                f"Unknown exchange {descriptor.exchange!r}",
                fields={"name": descriptor.symbol, "type": "error"},
            )

        try:
            body = await self._feed.get_json(SEARCH_PATH, params={"searchString": descriptor.symbol})
        except httpx.HTTPError as e:
            raise LookupFailure(
                f"Instrument search failed for {descriptor.label}: {e}",
                fields={"name": descriptor.symbol, "type": "error"},
            ) from e

        if body.get("type") != "success":
            raise LookupFailure(
                f"Instrument search rejected for {descriptor.label}: {body.get('description')}",
                fields={"name": descriptor.symbol, "type": body.get("type", "error")},
            )

        candidates = body.get("result")
        if not isinstance(candidates, list):
            candidates = []
        match = _best_match(descriptor, segments, candidates)
        if match is None:
            raise LookupFailure(
                f"No instrument matches {descriptor.label}",
                fields={"name": descriptor.symbol, "type": "error"},
            )

        try:
            handle = FeedInstrumentHandle(
                exchange_segment=int(match["ExchangeSegment"]),
                exchange_instrument_id=int(match["ExchangeInstrumentID"]),
                instrument_type=int(match.get("InstrumentType") or 0),
                name=match.get("DisplayName") or match.get("Name") or descriptor.symbol,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise LookupFailure(
                f"Unusable search result for {descriptor.label}: {e!r}",
                fields={"name": descriptor.symbol, "type": "error"},
            ) from e
        self._cache[descriptor] = handle
        return handle


def _best_match(
    descriptor: InstrumentDescriptor,
    segments: tuple[int, ...],
    candidates: list[dict[str, Any]],
) -> dict[str, Any] | None:
    """Pick the search result that fits the descriptor.

    Without expiry/strike/option type the cash instrument wins; otherwise the
    derivative contract must match every given field.
    """
    derivative = any(v is not None for v in (descriptor.expiry, descriptor.strike, descriptor.option_type))
    option_code = OPTION_TYPES.get(str(descriptor.option_type).upper()) if descriptor.option_type else None

    matches = []
    for item in candidates:
        if not isinstance(item, dict):
            continue
        try:
            segment = int(item.get("ExchangeSegment"))
        except (TypeError, ValueError):
            continue
        if segment not in segments:
            continue
        if str(item.get("Name", "")).upper() != descriptor.symbol:
            continue
        if descriptor.series and str(item.get("Series", "")).upper() != descriptor.series.upper():
            continue
        if descriptor.expiry and not str(item.get("ContractExpiration", "")).startswith(descriptor.expiry):
            continue
        if descriptor.strike is not None:
            try:
                if float(item.get("StrikePrice")) != descriptor.strike:
                    continue
            except (TypeError, ValueError):
                continue
        if option_code is not None and item.get("OptionType") != option_code:
            continue
        matches.append((segments.index(segment), item))

    if not matches:
        return None
    if not derivative:
        # Prefer the cash segment (listed first for the exchange)
        matches.sort(key=lambda pair: pair[0])
    return matches[0][1]
