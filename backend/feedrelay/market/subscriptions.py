"""Subscribe/unsubscribe flow between downstream clients and the feed."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from .directory import InstrumentDirectory
from .exceptions import LookupFailure, SubscriptionFailure
from .interface import InstrumentLookup, MarketFeed, RecordSink
from .models import InvalidInstrument, Operation, SubscriptionOutcome
from .protocol import InstrumentEntry

logger = logging.getLogger(__name__)

Notify = Callable[[dict[str, Any]], Awaitable[None]]


class SubscriptionManager:
    """Turns client subscribe/unsubscribe batches into feed requests.

    Each descriptor in a batch runs as its own task:
    lookup -> feed request -> log record -> directory update -> notify.
    A batch is a fan-out, not a transaction: every descriptor produces
    exactly one outcome and one client notification, whatever happens to
    the others. Entries that could not be decoded fail the same way an
    unknown instrument does.
    """

    def __init__(
        self,
        feed: MarketFeed,
        lookup: InstrumentLookup,
        directory: InstrumentDirectory,
        sink: RecordSink,
    ) -> None:
        self._feed = feed
        self._lookup = lookup
        self._directory = directory
        self._sink = sink

    async def subscribe(
        self, descriptors: Iterable[InstrumentEntry], notify: Notify
    ) -> list[SubscriptionOutcome]:
        return await self._run_batch(Operation.SUBSCRIBE, descriptors, notify)

    async def unsubscribe(
        self, descriptors: Iterable[InstrumentEntry], notify: Notify
    ) -> list[SubscriptionOutcome]:
        return await self._run_batch(Operation.UNSUBSCRIBE, descriptors, notify)

    # --- Internal ---

    async def _run_batch(
        self,
        operation: Operation,
        descriptors: Iterable[InstrumentEntry],
        notify: Notify,
    ) -> list[SubscriptionOutcome]:
        """Run one task per descriptor and wait for all of them.

        Lookup and subscription failures become failure outcomes. Anything
        else is re-raised once the whole batch has finished.
        """
        results = await asyncio.gather(
            *(self._process(operation, d, notify) for d in descriptors),
            return_exceptions=True,
        )
        outcomes: list[SubscriptionOutcome] = []
        fatal: BaseException | None = None
        for result in results:
            if isinstance(result, BaseException):
                fatal = fatal or result
            else:
                outcomes.append(result)
        if fatal is not None:
            raise fatal
        return outcomes

    async def _process(
        self,
        operation: Operation,
        descriptor: InstrumentEntry,
        notify: Notify,
    ) -> SubscriptionOutcome:
        try:
            if isinstance(descriptor, InvalidInstrument):
                raise LookupFailure(
                    descriptor.reason,
                    fields={"name": descriptor.to_dict().get("symbol"), "type": "error"},
                )
            handle = await self._lookup.resolve(descriptor)
            if operation is Operation.SUBSCRIBE:
                response = await self._feed.subscribe(handle)
            else:
                response = await self._feed.unsubscribe(handle)
        except (LookupFailure, SubscriptionFailure) as e:
            fields = {**descriptor.to_dict(), **e.fields}
            outcome = SubscriptionOutcome(operation=operation, fields=fields, error=str(e))
            logger.warning(
                "%s error %s %s: %s", operation.value, fields.get("name"), fields.get("type"), e
            )
        else:
            outcome = SubscriptionOutcome(operation=operation, fields=response)
            logger.info(
                "%s %s %s", operation.value.lower(), response.get("name"), response.get("type")
            )

        self._sink.write(outcome.to_record())
        if outcome.ok:
            self._apply(operation, outcome.fields)
        await self._notify(notify, outcome)
        return outcome

    def _apply(self, operation: Operation, response: dict[str, Any]) -> None:
        instrument_id = response.get("exchangeInstrumentID")
        if instrument_id is None:
            logger.warning("%s response without exchangeInstrumentID: %s", operation.value, response)
            return
        if operation is Operation.SUBSCRIBE:
            self._directory.set(instrument_id, response.get("name") or str(instrument_id))
        else:
            self._directory.remove(instrument_id)

    @staticmethod
    async def _notify(notify: Notify, outcome: SubscriptionOutcome) -> None:
        try:
            await notify(outcome.to_message())
        except Exception as e:
            # Client went away mid-batch; the outcome is already logged
            logger.warning("Could not notify client of %s outcome: %s", outcome.operation.value, e)
