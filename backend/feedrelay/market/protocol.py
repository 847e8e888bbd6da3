"""Inbound client message decoding.

Clients send single-key JSON objects:

    {"clientId": {"id": "desk-1"}}
    {"subscribe": {"list": [{"symbol": "NIFTY", "exchange": "NSE"}, ...]}}
    {"unsubscribe": {"list": [...]}}
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Union

from .exceptions import InvalidClientMessage
from .models import InstrumentDescriptor, InvalidInstrument

InstrumentEntry = Union[InstrumentDescriptor, InvalidInstrument]


@dataclass(frozen=True, slots=True)
class ClientIdMessage:
    client_id: str


@dataclass(frozen=True, slots=True)
class SubscribeMessage:
    instruments: tuple[InstrumentEntry, ...]


@dataclass(frozen=True, slots=True)
class UnsubscribeMessage:
    instruments: tuple[InstrumentEntry, ...]


ClientMessage = Union[ClientIdMessage, SubscribeMessage, UnsubscribeMessage]


def parse_client_message(raw: str | bytes | Mapping[str, Any]) -> ClientMessage:
    """Decode one inbound message. Raises InvalidClientMessage on anything else."""
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            # JSONDecodeError, or UnicodeDecodeError for binary frames
            raise InvalidClientMessage(f"invalid JSON: {e}") from e
    if not isinstance(raw, Mapping) or len(raw) != 1:
        raise InvalidClientMessage("expected an object with exactly one key")

    (key, payload), = raw.items()
    if not isinstance(payload, Mapping):
        raise InvalidClientMessage(f"{key!r} payload must be an object")

    match key:
        case "clientId":
            client_id = payload.get("id")
            if client_id is None or str(client_id).strip() == "":
                raise InvalidClientMessage("clientId needs a non-empty id")
            return ClientIdMessage(client_id=str(client_id))
        case "subscribe":
            return SubscribeMessage(instruments=_instrument_list(payload))
        case "unsubscribe":
            return UnsubscribeMessage(instruments=_instrument_list(payload))
        case _:
            raise InvalidClientMessage(f"unknown message type {key!r}")


def _instrument_list(payload: Mapping[str, Any]) -> tuple[InstrumentEntry, ...]:
    """Decode each entry on its own so one bad entry does not sink the batch."""
    items = payload.get("list")
    if not isinstance(items, list):
        raise InvalidClientMessage("'list' must be an array of instruments")
    return tuple(_instrument_entry(item) for item in items)


def _instrument_entry(item: Any) -> InstrumentEntry:
    try:
        return InstrumentDescriptor.from_dict(item)
    except InvalidClientMessage as e:
        return InvalidInstrument(raw=item, reason=str(e))
