"""Market data relay subsystem for FeedRelay.

Public API:
    InstrumentDirectory - Feed instrument id -> display name
    ClientRegistry      - Connected downstream clients, best-effort broadcast
    EventRouter         - Parses, annotates, logs and fans out feed events
    SubscriptionManager - Client subscribe/unsubscribe batches -> feed requests
    LifecycleController - Drains work and closes log sinks on shutdown
    MarketFeed          - Abstract interface for upstream feeds
    RelayRuntime        - Builds and owns all of the above for one process
    create_market_feed  - Factory that selects the simulator or XTS
    create_relay_router - FastAPI router factory for the client WebSocket
"""

from .clients import ClientRegistry
from .directory import InstrumentDirectory
from .factory import create_market_feed
from .interface import InstrumentLookup, MarketFeed, RecordSink
from .lifecycle import LifecycleController, ShutdownReason
from .router import EventRouter
from .runtime import RelayRuntime
from .server import create_relay_router
from .subscriptions import SubscriptionManager

__all__ = [
    "ClientRegistry",
    "EventRouter",
    "InstrumentDirectory",
    "InstrumentLookup",
    "LifecycleController",
    "MarketFeed",
    "RecordSink",
    "RelayRuntime",
    "ShutdownReason",
    "SubscriptionManager",
    "create_market_feed",
    "create_relay_router",
]
