"""Routes upstream events to the log sinks and downstream clients."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from .clients import ClientRegistry
from .directory import InstrumentDirectory
from .exceptions import MalformedEventError
from .models import EventCategory, MarketEvent
from .sinks import LogSinks

logger = logging.getLogger(__name__)


class EventRouter:
    """Parses, annotates, logs and fans out upstream market events.

    Per event: parse -> name = directory.get(id) -> category sink ->
    broadcast ``{"marketdata": [annotated]}`` for candle and LTP events.
    Market depth is logged only. Malformed events are reported and dropped.
    """

    def __init__(
        self,
        directory: InstrumentDirectory,
        clients: ClientRegistry,
        sinks: LogSinks,
    ) -> None:
        self.directory = directory
        self.clients = clients
        self._sinks = sinks
        self._handled: Counter[str] = Counter()
        self._dropped: Counter[str] = Counter()

    async def handle(self, category: EventCategory | str, raw: Any) -> dict[str, Any] | None:
        """Process one raw upstream event. Returns the annotated record, if any."""
        try:
            category = EventCategory(category)
        except ValueError:
            logger.debug("Ignoring unknown feed event %r", category)
            return None

        if not category.processed:
            logger.debug("Ignoring %s event: %s", category.name, raw)
            return None

        try:
            event = MarketEvent.parse(category, raw)
        except MalformedEventError as e:
            self._dropped[category.name] += 1
            logger.warning("Dropping malformed event: %s", e)
            return None

        record = event.annotate(self.directory.get(event.instrument_id))

        sink = self._sinks.for_category(category)
        if sink is not None:
            sink.write(record)

        if category.broadcast:
            # Always a one-element list so router pushes match multi-item pushes
            await self.clients.broadcast({"marketdata": [record]})

        self._handled[category.name] += 1
        return record

    def stats(self) -> dict[str, dict[str, int]]:
        """Per-category counters of handled and dropped events."""
        return {"handled": dict(self._handled), "dropped": dict(self._dropped)}
