"""Table-backed instrument lookup used with the simulated feed."""

from __future__ import annotations

import logging

from .exceptions import LookupFailure
from .interface import InstrumentLookup
from .models import FeedInstrumentHandle, InstrumentDescriptor
from .seed_instruments import SEED_INSTRUMENTS

logger = logging.getLogger(__name__)


class StaticInstrumentLookup(InstrumentLookup):
    """Resolves descriptors against a fixed (exchange, symbol) table."""

    def __init__(self, table: dict[tuple[str, str], tuple[int, int, int]] | None = None) -> None:
        self._table = dict(SEED_INSTRUMENTS if table is None else table)

    async def resolve(self, descriptor: InstrumentDescriptor) -> FeedInstrumentHandle:
        entry = self._table.get((descriptor.exchange, descriptor.symbol))
        if entry is None:
            raise LookupFailure(
                f"Unknown instrument {descriptor.label}",
                fields={"name": descriptor.symbol, "type": "error"},
            )
        segment, instrument_id, instrument_type = entry
        return FeedInstrumentHandle(
            exchange_segment=segment,
            exchange_instrument_id=instrument_id,
            instrument_type=instrument_type,
            name=descriptor.symbol,
        )

    def add(self, exchange: str, symbol: str, segment: int, instrument_id: int, instrument_type: int) -> None:
        self._table[(exchange.upper(), symbol.upper())] = (segment, instrument_id, instrument_type)
        logger.debug("Lookup table: added %s:%s -> %d", exchange, symbol, instrument_id)
