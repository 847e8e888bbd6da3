"""Simulated market feed for development, shaped like the XTS event stream."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any

import numpy as np

from .exceptions import SubscriptionFailure
from .interface import EventHandler, MarketFeed
from .models import EventCategory, FeedInstrumentHandle
from .seed_instruments import DEFAULT_PARAMS, INSTRUMENT_PARAMS, SEED_PRICES

logger = logging.getLogger(__name__)

# One second of an NSE trading year (~248 days * 6.25h/day)
TICK_DT = 1.0 / (248 * 6.25 * 3600)


class PriceWalk:
    """Log-normal random walk over a changing set of instruments.

    Each tick every instrument moves by

        log(S'/S) = sigma * sqrt(dt) * (beta * M + sqrt(1 - beta^2) * e)

    M is one market-wide shock drawn per tick and e is the instrument's own,
    so two instruments co-move with correlation beta_a * beta_b. With
    probability ``gap_probability`` an instrument also gaps 1-3% either way.
    """

    def __init__(
        self,
        dt: float = TICK_DT,
        gap_probability: float = 0.001,
        rng: np.random.Generator | None = None,
    ) -> None:
        self._dt = dt
        self._gap_prob = gap_probability
        self._rng = rng or np.random.default_rng()
        self._prices: dict[int, float] = {}
        self._sigma: dict[int, float] = {}
        self._beta: dict[int, float] = {}

    def __contains__(self, instrument_id: int) -> bool:
        return instrument_id in self._prices

    def __len__(self) -> int:
        return len(self._prices)

    def add(self, instrument_id: int) -> None:
        if instrument_id in self._prices:
            return
        params = INSTRUMENT_PARAMS.get(instrument_id, DEFAULT_PARAMS)
        seed = SEED_PRICES.get(instrument_id)
        self._prices[instrument_id] = seed if seed is not None else float(self._rng.uniform(100.0, 3000.0))
        self._sigma[instrument_id] = params["sigma"]
        self._beta[instrument_id] = min(max(params["beta"], 0.0), 1.0)

    def remove(self, instrument_id: int) -> None:
        self._prices.pop(instrument_id, None)
        self._sigma.pop(instrument_id, None)
        self._beta.pop(instrument_id, None)

    def price(self, instrument_id: int) -> float | None:
        return self._prices.get(instrument_id)

    def step(self) -> dict[int, float]:
        """Move every instrument one tick. Returns {id: price rounded to paise}."""
        ids = list(self._prices)
        if not ids:
            return {}

        sigma = np.array([self._sigma[i] for i in ids])
        beta = np.array([self._beta[i] for i in ids])
        market = self._rng.standard_normal()
        own = self._rng.standard_normal(len(ids))
        moves = sigma * np.sqrt(self._dt) * (beta * market + np.sqrt(1.0 - beta**2) * own)

        gaps = self._rng.random(len(ids)) < self._gap_prob
        if gaps.any():
            sizes = self._rng.uniform(0.01, 0.03, gaps.sum()) * self._rng.choice((-1.0, 1.0), gaps.sum())
            moves[gaps] += np.log1p(sizes)
            logger.debug("Price gap on %s", [ids[i] for i in np.flatnonzero(gaps)])

        prices = np.array([self._prices[i] for i in ids]) * np.exp(moves)
        self._prices = dict(zip(ids, prices.tolist()))
        return {i: round(p, 2) for i, p in self._prices.items()}


@dataclass
class _Bar:
    """OHLC and traded volume since the last candle."""

    open: float
    high: float
    low: float
    close: float
    volume: int = 0

    @classmethod
    def first(cls, price: float, quantity: int) -> _Bar:
        return cls(open=price, high=price, low=price, close=price, volume=quantity)

    def add(self, price: float, quantity: int) -> None:
        self.high = max(self.high, price)
        self.low = min(self.low, price)
        self.close = price
        self.volume += quantity


class SimulatorFeed(MarketFeed):
    """MarketFeed backed by PriceWalk.

    Runs a background task that steps the walk every ``update_interval``
    seconds and emits, per subscribed instrument, a market depth and an LTP
    event each tick plus a candle every ``candle_ticks`` ticks. Events use the
    same JSON shape as the XTS feed.
    """

    def __init__(
        self,
        update_interval: float = 1.0,
        candle_ticks: int = 5,
        gap_probability: float = 0.001,
        rng: np.random.Generator | None = None,
    ) -> None:
        self._interval = update_interval
        self._candle_ticks = max(1, candle_ticks)
        self._walk = PriceWalk(gap_probability=gap_probability, rng=rng)
        self._handles: dict[int, FeedInstrumentHandle] = {}
        self._bars: dict[int, _Bar] = {}
        self._ticks = 0
        self._on_event: EventHandler | None = None
        self._task: asyncio.Task | None = None

    async def start(self, on_event: EventHandler) -> None:
        self._on_event = on_event
        self._task = asyncio.create_task(self._run_loop(), name="simulator-feed")
        logger.info("Simulator feed started (%.2fs interval)", self._interval)

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Simulator feed stopped")

    async def subscribe(self, handle: FeedInstrumentHandle) -> dict[str, Any]:
        instrument_id = handle.exchange_instrument_id
        self._handles[instrument_id] = handle
        self._walk.add(instrument_id)
        logger.info("Simulator: subscribed %s (%d)", handle.name, instrument_id)
        return {**handle.to_dict(), "type": "success", "description": "Instrument subscribed successfully"}

    async def unsubscribe(self, handle: FeedInstrumentHandle) -> dict[str, Any]:
        instrument_id = handle.exchange_instrument_id
        if instrument_id not in self._handles:
            raise SubscriptionFailure(
                f"Instrument {instrument_id} is not subscribed",
                fields={**handle.to_dict(), "type": "error", "description": "Instrument not subscribed"},
            )
        del self._handles[instrument_id]
        self._bars.pop(instrument_id, None)
        self._walk.remove(instrument_id)
        logger.info("Simulator: unsubscribed %s (%d)", handle.name, instrument_id)
        return {**handle.to_dict(), "type": "success", "description": "Instrument unsubscribed successfully"}

    def get_instruments(self) -> list[int]:
        return list(self._handles)

    # --- Internal ---

    async def _run_loop(self) -> None:
        while True:
            try:
                await self._tick()
            except Exception:
                logger.exception("Simulator step failed")
            await asyncio.sleep(self._interval)

    async def _tick(self) -> None:
        if self._on_event is None:
            return
        prices = self._walk.step()
        now = int(time.time())
        self._ticks += 1
        close_bar = self._ticks % self._candle_ticks == 0

        for instrument_id, price in prices.items():
            handle = self._handles.get(instrument_id)
            if handle is None:
                continue
            quantity = random.randint(1, 500)
            bar = self._bars.get(instrument_id)
            if bar is None:
                self._bars[instrument_id] = _Bar.first(price, quantity)
            else:
                bar.add(price, quantity)

            await self._on_event(EventCategory.MARKET_DEPTH, _depth_event(handle, price, now))
            await self._on_event(EventCategory.LTP, _ltp_event(handle, price, quantity, now))
            if close_bar:
                await self._on_event(
                    EventCategory.CANDLE, _candle_event(handle, self._bars.pop(instrument_id), now)
                )


def _ltp_event(handle: FeedInstrumentHandle, price: float, quantity: int, now: int) -> dict[str, Any]:
    return {
        "MessageCode": EventCategory.LTP.message_code,
        "ExchangeSegment": handle.exchange_segment,
        "ExchangeInstrumentID": handle.exchange_instrument_id,
        "LastTradedPrice": price,
        "LastTradedQunatity": quantity,
        "LastUpdateTime": now,
    }


def _candle_event(handle: FeedInstrumentHandle, bar: _Bar, now: int) -> dict[str, Any]:
    return {
        "MessageCode": EventCategory.CANDLE.message_code,
        "ExchangeSegment": handle.exchange_segment,
        "ExchangeInstrumentID": handle.exchange_instrument_id,
        "BarTime": now,
        "BarVolume": bar.volume,
        "Open": bar.open,
        "High": bar.high,
        "Low": bar.low,
        "Close": bar.close,
        "OpenInterest": 0,
    }


def _depth_event(handle: FeedInstrumentHandle, price: float, now: int) -> dict[str, Any]:
    tick = 0.05
    bids = [
        {"Size": random.randint(1, 1000), "Price": round(price - tick * (i + 1), 2), "TotalOrders": random.randint(1, 20)}
        for i in range(5)
    ]
    asks = [
        {"Size": random.randint(1, 1000), "Price": round(price + tick * (i + 1), 2), "TotalOrders": random.randint(1, 20)}
        for i in range(5)
    ]
    return {
        "MessageCode": EventCategory.MARKET_DEPTH.message_code,
        "ExchangeSegment": handle.exchange_segment,
        "ExchangeInstrumentID": handle.exchange_instrument_id,
        "ExchangeTimeStamp": now,
        "Bids": bids,
        "Asks": asks,
        "Touchline": {"LastTradedPrice": price, "LastUpdateTime": now},
    }
