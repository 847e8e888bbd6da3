"""Data models for the market data relay."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .exceptions import InvalidClientMessage, MalformedEventError


class EventCategory(str, Enum):
    """Upstream socket.io event names, one per message code."""

    TOUCHLINE = "1501-json-full"
    MARKET_DEPTH = "1502-json-full"
    CANDLE = "1505-json-full"
    MARKET_STATUS = "1507-json-full"
    OPEN_INTEREST = "1510-json-full"
    LTP = "1512-json-full"

    @property
    def message_code(self) -> int:
        return int(self.value.split("-", 1)[0])

    @property
    def processed(self) -> bool:
        """Whether the router logs this category."""
        return self in PROCESSED_CATEGORIES

    @property
    def broadcast(self) -> bool:
        """Whether the router forwards this category to clients."""
        return self in (EventCategory.CANDLE, EventCategory.LTP)


PROCESSED_CATEGORIES = (EventCategory.MARKET_DEPTH, EventCategory.CANDLE, EventCategory.LTP)


class Operation(str, Enum):
    SUBSCRIBE = "Subscribe"
    UNSUBSCRIBE = "Unsubscribe"


@dataclass(frozen=True, slots=True)
class InstrumentDescriptor:
    """Client-supplied identification of a tradable instrument."""

    symbol: str
    exchange: str
    series: str | None = None
    expiry: str | None = None
    strike: float | None = None
    option_type: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> InstrumentDescriptor:
        """Decode a descriptor from a client JSON object. Unknown keys are ignored."""
        if not isinstance(data, Mapping):
            raise InvalidClientMessage(f"instrument must be an object, got {type(data).__name__}")
        symbol = str(data.get("symbol") or "").strip()
        exchange = str(data.get("exchange") or "").strip()
        if not symbol or not exchange:
            raise InvalidClientMessage(f"instrument needs symbol and exchange: {dict(data)!r}")

        strike = data.get("strike")
        if strike is not None:
            try:
                strike = float(strike)
            except (TypeError, ValueError) as e:
                raise InvalidClientMessage(f"invalid strike {strike!r}") from e

        return cls(
            symbol=symbol.upper(),
            exchange=exchange.upper(),
            series=data.get("series"),
            expiry=data.get("expiry"),
            strike=strike,
            option_type=data.get("optionType"),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"symbol": self.symbol, "exchange": self.exchange}
        if self.series is not None:
            result["series"] = self.series
        if self.expiry is not None:
            result["expiry"] = self.expiry
        if self.strike is not None:
            result["strike"] = self.strike
        if self.option_type is not None:
            result["optionType"] = self.option_type
        return result

    @property
    def label(self) -> str:
        """Readable form for logs, e.g. 'NSE:NIFTY'."""
        return f"{self.exchange}:{self.symbol}"


DESCRIPTOR_KEYS = ("symbol", "exchange", "series", "expiry", "strike", "optionType")


@dataclass(frozen=True, slots=True)
class InvalidInstrument:
    """A list entry that could not be decoded into an InstrumentDescriptor."""

    raw: Any
    reason: str

    def to_dict(self) -> dict[str, Any]:
        """Whatever descriptor fields the client did send."""
        if not isinstance(self.raw, Mapping):
            return {}
        return {key: self.raw[key] for key in DESCRIPTOR_KEYS if key in self.raw}

    @property
    def label(self) -> str:
        fields = self.to_dict()
        return f"{fields.get('exchange') or '?'}:{fields.get('symbol') or '?'}"


@dataclass(frozen=True, slots=True)
class FeedInstrumentHandle:
    """Resolved, feed-specific identifier for an instrument."""

    exchange_segment: int
    exchange_instrument_id: int
    instrument_type: int
    name: str

    def to_dict(self) -> dict[str, Any]:
        """Serialize in the feed's own field names."""
        return {
            "exchangeSegment": self.exchange_segment,
            "exchangeInstrumentID": self.exchange_instrument_id,
            "instrumentType": self.instrument_type,
            "name": self.name,
        }


@dataclass(frozen=True, slots=True)
class MarketEvent:
    """A single parsed upstream event."""

    category: EventCategory
    instrument_id: int
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def parse(cls, category: EventCategory, raw: Any) -> MarketEvent:
        """Parse a raw feed message (JSON text or mapping).

        Raises MalformedEventError if the payload is not a JSON object or has
        no usable ExchangeInstrumentID.
        """
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                raise MalformedEventError(f"{category.value}: invalid JSON ({e})") from e
        if not isinstance(raw, Mapping):
            raise MalformedEventError(f"{category.value}: expected object, got {type(raw).__name__}")

        try:
            instrument_id = int(raw["ExchangeInstrumentID"])
        except KeyError as e:
            raise MalformedEventError(f"{category.value}: missing ExchangeInstrumentID") from e
        except (TypeError, ValueError) as e:
            raise MalformedEventError(
                f"{category.value}: bad ExchangeInstrumentID {raw['ExchangeInstrumentID']!r}"
            ) from e

        return cls(category=category, instrument_id=instrument_id, payload=dict(raw))

    def annotate(self, name: str | None) -> dict[str, Any]:
        """Flattened copy of the payload with the display name added."""
        return {**self.payload, "name": name}


@dataclass(frozen=True, slots=True)
class SubscriptionOutcome:
    """Result of one subscribe/unsubscribe attempt for one descriptor."""

    operation: Operation
    fields: dict[str, Any]
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_record(self) -> dict[str, Any]:
        """Row for the sub_unsub log."""
        return {**self.fields, "operation": self.operation.value, "error": self.error}

    def to_message(self) -> dict[str, Any]:
        """Outbound client message."""
        body = {**self.fields, "operation": self.operation.value}
        if self.error is not None:
            body["error"] = self.error
        return {"message": body}
