#!/usr/bin/env python3
"""Polls LN Markets on a fixed interval and keeps the latest snapshot plus a bounded price history."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Protocol, Tuple

from constants import DEFAULT_HISTORY_HOURS, DEFAULT_POLL_INTERVAL, HISTORY_PERSIST_EVERY
from services.lnmarkets_client import FundingInfo, MarketClient, Ticker

logger = logging.getLogger(__name__)

TickerListener = Callable[[Ticker], Awaitable[None]]
FundingListener = Callable[[FundingInfo], Awaitable[None]]
ErrorListener = Callable[[Exception], Awaitable[None]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PriceHistoryStore(Protocol):
    async def record_price(self, price: float, recorded_at: datetime) -> None: ...

    async def get_price_at(self, cutoff: datetime) -> Optional[float]: ...

    async def prune_price_history(self, older_than: datetime) -> int: ...


@dataclass(frozen=True, slots=True)
class PriceSample:
    price: float
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class FeedState:
    """Immutable view of the feed; replaced wholesale on every poll."""
    ticker: Optional[Ticker] = None
    funding: Optional[FundingInfo] = None
    history: Tuple[PriceSample, ...] = ()
    ticker_updated_at: Optional[datetime] = None
    funding_updated_at: Optional[datetime] = None


class MarketFeed:
    def __init__(
        self,
        market_client: MarketClient,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        retention: timedelta = timedelta(hours=DEFAULT_HISTORY_HOURS),
        history_store: Optional[PriceHistoryStore] = None,
        history_persist_every: int = HISTORY_PERSIST_EVERY,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.market_client = market_client
        self.poll_interval = poll_interval
        self.retention = retention
        self.history_store = history_store
        self.history_persist_every = history_persist_every
        self._clock = clock
        self._state = FeedState()
        self._samples_seen = 0
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._ready = asyncio.Event()
        self._wakeup = asyncio.Event()
        self._ticker_listeners: List[TickerListener] = []
        self._funding_listeners: List[FundingListener] = []
        self._error_listeners: List[ErrorListener] = []

    # --- Read side ---

    @property
    def state(self) -> FeedState:
        return self._state

    @property
    def ticker(self) -> Optional[Ticker]:
        return self._state.ticker

    @property
    def funding(self) -> Optional[FundingInfo]:
        return self._state.funding

    @property
    def current_price(self) -> Optional[float]:
        ticker = self._state.ticker
        return ticker.last_price if ticker else None

    @property
    def current_funding_rate(self) -> Optional[float]:
        funding = self._state.funding
        return funding.rate if funding else None

    def history(self) -> Tuple[PriceSample, ...]:
        return self._state.history

    @property
    def is_running(self) -> bool:
        return self._running

    async def price_at(self, minutes_ago: float) -> Optional[float]:
        """Newest retained sample at or before ``now - minutes_ago``, else the long-term store."""
        cutoff = self._clock() - timedelta(minutes=minutes_ago)
        for sample in reversed(self._state.history):
            if sample.timestamp <= cutoff:
                return sample.price

        if self.history_store is None:
            return None
        try:
            return await self.history_store.get_price_at(cutoff)
        except Exception as exc:
            logger.warning("Price history lookup failed for %s: %s", cutoff.isoformat(), exc)
            return None

    async def percent_change(self, minutes_ago: float) -> Optional[float]:
        current = self.current_price
        if current is None:
            return None
        old_price = await self.price_at(minutes_ago)
        if not old_price:
            return None
        return (current - old_price) / old_price * 100

    # --- Listeners ---

    def add_ticker_listener(self, listener: TickerListener) -> None:
        self._ticker_listeners.append(listener)

    def add_funding_listener(self, listener: FundingListener) -> None:
        self._funding_listeners.append(listener)

    def remove_ticker_listener(self, listener: TickerListener) -> None:
        if listener in self._ticker_listeners:
            self._ticker_listeners.remove(listener)

    def remove_funding_listener(self, listener: FundingListener) -> None:
        if listener in self._funding_listeners:
            self._funding_listeners.remove(listener)

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    # --- Lifecycle ---

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._wakeup.clear()
        self._task = asyncio.create_task(self._run_loop(), name="market-feed")
        logger.info("Market feed started (interval %.1fs)", self.poll_interval)

    async def stop(self) -> None:
        """Stops scheduling polls; a poll already in progress is allowed to finish."""
        if not self._running:
            return
        self._running = False
        self._wakeup.set()
        task = self._task
        self._task = None
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        logger.info("Market feed stopped")

    async def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _run_loop(self) -> None:
        while self._running:
            await self.poll()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def poll(self) -> None:
        """Runs one poll cycle: ticker then funding, each emitted only when its fetch succeeds."""
        ticker_result, funding_result = await asyncio.gather(
            self.market_client.get_ticker(),
            self.market_client.get_funding(),
            return_exceptions=True,
        )
        now = self._clock()

        if isinstance(ticker_result, Exception):
            await self._emit_error(ticker_result)
        else:
            self._apply_ticker(ticker_result, now)
            await self._persist_sample(ticker_result.last_price, now)
            await self._emit(self._ticker_listeners, ticker_result, "ticker")

        if isinstance(funding_result, Exception):
            await self._emit_error(funding_result)
        else:
            self._state = replace(self._state, funding=funding_result, funding_updated_at=now)
            await self._emit(self._funding_listeners, funding_result, "funding")

    def _apply_ticker(self, ticker: Ticker, now: datetime) -> None:
        cutoff = now - self.retention
        history = tuple(
            sample for sample in self._state.history if sample.timestamp > cutoff
        ) + (PriceSample(price=ticker.last_price, timestamp=now),)
        self._state = replace(self._state, ticker=ticker, history=history, ticker_updated_at=now)
        self._samples_seen += 1
        self._ready.set()

    async def _persist_sample(self, price: float, now: datetime) -> None:
        if self.history_store is None or self._samples_seen % self.history_persist_every != 0:
            return
        try:
            await self.history_store.record_price(price, now)
            await self.history_store.prune_price_history(now - self.retention)
        except Exception as exc:
            logger.warning("Could not persist price sample: %s", exc)

    async def _emit(self, listeners: list, payload, event: str) -> None:
        for listener in list(listeners):
            try:
                await listener(payload)
            except Exception:
                logger.exception("Unhandled error in %s listener", event)

    async def _emit_error(self, error: Exception) -> None:
        logger.warning("Market poll failed: %s", error)
        await self._emit(self._error_listeners, error, "error")
