"""Factory for creating the upstream feed and its instrument lookup."""

from __future__ import annotations

import logging

from ..config import RelaySettings
from .interface import InstrumentLookup, MarketFeed

logger = logging.getLogger(__name__)


def create_market_feed(settings: RelaySettings) -> tuple[MarketFeed, InstrumentLookup]:
    """Create the feed and lookup selected by the settings.

    - XTS_APP_KEY and XTS_SECRET_KEY set and non-blank -> XtsMarketFeed
    - Otherwise -> SimulatorFeed with the static instrument table

    Returns an unstarted feed. Caller must await feed.start(handler).
    """
    if settings.use_xts:
        from .xts_client import XtsInstrumentLookup, XtsMarketFeed

        logger.info("Market feed: XTS API at %s", settings.xts_api_url)
        feed = XtsMarketFeed(
            api_url=settings.xts_api_url,
            app_key=settings.xts_app_key,
            secret_key=settings.xts_secret_key,
            source=settings.xts_source,
        )
        return feed, XtsInstrumentLookup(feed)
    else:
        from .lookup import StaticInstrumentLookup
        from .simulator import SimulatorFeed

        logger.info("Market feed: GBM simulator")
        return SimulatorFeed(update_interval=settings.sim_interval), StaticInstrumentLookup()
