"""Wires the relay components together for one process."""

from __future__ import annotations

import logging
from typing import Any

from ..config import RelaySettings
from .clients import ClientRegistry
from .directory import InstrumentDirectory
from .factory import create_market_feed
from .interface import InstrumentLookup, MarketFeed
from .lifecycle import LifecycleController
from .models import EventCategory
from .router import EventRouter
from .sinks import SINK_NAMES, LogSinks, open_log_sinks
from .subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)


class RelayRuntime:
    """Owns the directory, client registry, sinks, router and feed.

    Collaborators receive these by reference; nothing is a module global.

    Lifecycle:
        runtime = RelayRuntime(settings)
        await runtime.start()      # opens sinks, starts the feed
        ...                        # clients subscribe, events flow
        status = await runtime.stop()
    """

    def __init__(
        self,
        settings: RelaySettings,
        feed: MarketFeed | None = None,
        lookup: InstrumentLookup | None = None,
        sinks: LogSinks | None = None,
    ) -> None:
        self.settings = settings
        if feed is None or lookup is None:
            feed, lookup = create_market_feed(settings)
        self.feed = feed
        self.lookup = lookup
        self.directory = InstrumentDirectory()
        self.clients = ClientRegistry()
        self.lifecycle = LifecycleController(
            dict.fromkeys(SINK_NAMES),
            close_timeout=settings.shutdown_timeout,
            drain_timeout=settings.shutdown_timeout,
        )
        self.lifecycle.on_drained(self._stop_feed)
        self.sinks: LogSinks | None = sinks
        self.router: EventRouter | None = None
        self.subscriptions: SubscriptionManager | None = None

    async def start(self) -> None:
        if self.sinks is None:
            self.sinks = open_log_sinks(self.settings.log_dir)
        self.sinks.start()
        self.lifecycle.attach_sinks(self.sinks.all())

        self.router = EventRouter(self.directory, self.clients, self.sinks)
        self.subscriptions = SubscriptionManager(
            feed=self.feed,
            lookup=self.lookup,
            directory=self.directory,
            sink=self.sinks.subscriptions,
        )
        await self.feed.start(self._on_feed_event)
        logger.info("Relay started")

    async def stop(self) -> int:
        """Shut down in order and return the process exit status."""
        status = await self.lifecycle.shutdown()
        await self.lookup.close()
        return status

    def status(self) -> dict[str, Any]:
        return {
            "feed": type(self.feed).__name__,
            "clients": self.clients.client_ids(),
            "instruments": len(self.directory),
            "events": self.router.stats() if self.router else {},
            "in_flight": self.lifecycle.in_flight,
            "shutdown": self.lifecycle.reason.value if self.lifecycle.reason else None,
        }

    async def _on_feed_event(self, category: EventCategory, raw: Any) -> None:
        if self.router is None:
            logger.warning("Dropping %s event received before start", category.name)
            return
        try:
            await self.router.handle(category, raw)
        except Exception as exc:
            self.lifecycle.fail(exc)

    async def _stop_feed(self) -> None:
        await self.feed.stop()
