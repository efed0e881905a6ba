# alert_engine.py
import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from alerts.evaluator import (
    cooldown_elapsed,
    funding_triggered,
    liquidation_distance,
    margin_percent,
    percent_change_triggered,
    price_triggered,
    render_funding_message,
    render_liquidation_message,
    render_margin_message,
    render_percent_change_message,
    render_price_message,
)
from alerts.models import Alert, AlertKind, FUNDING_KINDS, TICKER_KINDS
from constants import (
    DEFAULT_ALERT_COOLDOWN,
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_MARGIN_INTERVAL,
    DEFAULT_MAX_CONCURRENT_FETCHES,
)
from services.lnmarkets_client import Credentials, CrossPosition, FundingInfo, IsolatedPosition, PositionClient, Ticker
from services.market_feed import MarketFeed, utc_now
from services.notifier import Notifier
from storage import SQLiteRepository

logger = logging.getLogger(__name__)

PositionClientFactory = Callable[[Credentials], PositionClient]
PositionSnapshot = Tuple[List[IsolatedPosition], Optional[CrossPosition]]


class AlertEngine:
    """Matches live market state and user positions against stored alerts and delivers notifications.

    Price and funding alerts are evaluated on every feed emission. Margin and
    liquidation alerts run on their own timer because they need one signed API
    call per user. All evaluation is serialized through a single lock so an
    alert is never evaluated by two cycles at once.
    """

    def __init__(
        self,
        repository: SQLiteRepository,
        market_feed: MarketFeed,
        notifier: Notifier,
        *,
        position_client_factory: PositionClientFactory,
        cooldown: timedelta = timedelta(seconds=DEFAULT_ALERT_COOLDOWN),
        margin_interval: float = DEFAULT_MARGIN_INTERVAL,
        max_concurrent_fetches: int = DEFAULT_MAX_CONCURRENT_FETCHES,
        fetch_timeout: float = DEFAULT_HTTP_TIMEOUT,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.market_feed = market_feed
        self.notifier = notifier
        self.position_client_factory = position_client_factory
        self.cooldown = cooldown
        self.margin_interval = margin_interval
        self.max_concurrent_fetches = max_concurrent_fetches
        self.fetch_timeout = fetch_timeout
        self._clock = clock
        self._evaluation_lock = asyncio.Lock()
        self._attached = False
        self._running = False
        self._stopped = False
        self._wakeup = asyncio.Event()
        self._margin_task: Optional[asyncio.Task] = None
        self.last_margin_check: Optional[datetime] = None
        self.alerts_sent = 0

    # --- Lifecycle ---

    def attach(self) -> None:
        """Subscribes to the feed's ticker and funding emissions."""
        if self._attached:
            return
        self.market_feed.add_ticker_listener(self.on_ticker)
        self.market_feed.add_funding_listener(self.on_funding)
        self._attached = True

    def detach(self) -> None:
        if not self._attached:
            return
        self.market_feed.remove_ticker_listener(self.on_ticker)
        self.market_feed.remove_funding_listener(self.on_funding)
        self._attached = False

    def start(self) -> None:
        self._stopped = False
        self.attach()
        if self._running:
            return
        self._running = True
        self._wakeup.clear()
        self._margin_task = asyncio.create_task(self._run_margin_loop(), name="margin-check")
        logger.info(
            "Alert engine started (cooldown %ss, margin interval %.0fs)",
            int(self.cooldown.total_seconds()),
            self.margin_interval,
        )

    async def stop(self) -> None:
        """Stops all evaluation; a margin cycle in progress finishes first."""
        self._stopped = True
        self.detach()
        if not self._running:
            return
        self._running = False
        self._wakeup.set()
        task = self._margin_task
        self._margin_task = None
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        logger.info("Alert engine stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _run_margin_loop(self) -> None:
        while self._running:
            try:
                await self.check_positions()
            except Exception:
                logger.exception("Margin check cycle failed")
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.margin_interval)
            except asyncio.TimeoutError:
                pass

    # --- Price & funding path ---

    async def on_ticker(self, ticker: Ticker) -> List[Alert]:
        return await self._evaluate_market_alerts(TICKER_KINDS, ticker=ticker)

    async def on_funding(self, funding: FundingInfo) -> List[Alert]:
        return await self._evaluate_market_alerts(FUNDING_KINDS, funding=funding)

    async def _evaluate_market_alerts(
        self,
        kinds: frozenset,
        *,
        ticker: Optional[Ticker] = None,
        funding: Optional[FundingInfo] = None,
    ) -> List[Alert]:
        fired: List[Alert] = []
        async with self._evaluation_lock:
            if self._stopped:
                return fired
            try:
                alerts = await self.repository.list_active_alerts(kinds=kinds)
            except Exception:
                logger.exception("Could not load active alerts")
                return fired

            now = self._clock()
            for alert in alerts:
                if not cooldown_elapsed(alert, now, self.cooldown):
                    continue
                try:
                    message = await self._market_message(alert, ticker, funding)
                    if message is None:
                        continue
                    updated = await self._fire(alert, message)
                    if updated is not None:
                        fired.append(updated)
                except Exception:
                    logger.exception("Error evaluating alert %s", alert.id)
        return fired

    async def _market_message(
        self,
        alert: Alert,
        ticker: Optional[Ticker],
        funding: Optional[FundingInfo],
    ) -> Optional[str]:
        """Returns the rendered notification when the alert's condition holds, else None."""
        kind = alert.kind
        if kind in (AlertKind.PRICE_ABOVE, AlertKind.PRICE_BELOW):
            if ticker is None or not price_triggered(alert, ticker.last_price):
                return None
            return render_price_message(alert, ticker.last_price)
        elif kind in (AlertKind.FUNDING_ABOVE, AlertKind.FUNDING_BELOW):
            if funding is None or not funding_triggered(alert, funding.rate):
                return None
            return render_funding_message(alert, funding.rate)
        elif kind is AlertKind.PERCENT_CHANGE:
            if ticker is None:
                return None
            change = await self.market_feed.percent_change(alert.window_minutes)
            if not percent_change_triggered(alert.target_value, change):
                return None
            return render_percent_change_message(alert, change, ticker.last_price)
        elif kind in (AlertKind.MARGIN_BELOW, AlertKind.LIQUIDATION_DISTANCE):
            return None
        logger.warning("Skipping alert %s with unsupported kind %r", alert.id, kind)
        return None

    # --- Margin & liquidation path ---

    async def check_positions(self) -> List[Alert]:
        """Runs one margin/liquidation cycle: at most one position fetch per user."""
        try:
            rows = await self.repository.list_position_alerts_with_credentials()
        except Exception:
            logger.exception("Could not load position alerts")
            return []

        now = self._clock()
        alerts_by_owner: Dict[int, List[Alert]] = defaultdict(list)
        credentials_by_owner: Dict[int, Credentials] = {}
        for alert, credentials in rows:
            if not cooldown_elapsed(alert, now, self.cooldown):
                continue
            alerts_by_owner[alert.owner].append(alert)
            credentials_by_owner[alert.owner] = credentials

        self.last_margin_check = now
        if not alerts_by_owner:
            return []

        semaphore = asyncio.Semaphore(self.max_concurrent_fetches)
        owners = list(alerts_by_owner)
        snapshots = await asyncio.gather(
            *(self._fetch_positions(owner, credentials_by_owner[owner], semaphore) for owner in owners)
        )

        fired: List[Alert] = []
        async with self._evaluation_lock:
            current_price = self.market_feed.current_price
            for owner, snapshot in zip(owners, snapshots):
                if snapshot is None:
                    continue
                positions, cross = snapshot
                for alert in alerts_by_owner[owner]:
                    try:
                        # The fetch ran unlocked; the alert may have been cancelled or fired meanwhile.
                        alert = await self.repository.get_alert(alert.id)
                        if alert is None or not alert.active or not cooldown_elapsed(alert, self._clock(), self.cooldown):
                            continue
                        fired.extend(await self._evaluate_position_alert(alert, positions, cross, current_price))
                    except Exception:
                        logger.exception("Error evaluating alert %s", alert.id)
        return fired

    async def _fetch_positions(
        self,
        owner: int,
        credentials: Credentials,
        semaphore: asyncio.Semaphore,
    ) -> Optional[PositionSnapshot]:
        async with semaphore:
            try:
                client = self.position_client_factory(credentials)
                positions, cross = await asyncio.wait_for(
                    asyncio.gather(client.get_open_positions(), client.get_cross_position()),
                    timeout=self.fetch_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning("Position fetch for user %s timed out after %ss; skipping this cycle", owner, self.fetch_timeout)
                return None
            except Exception as exc:
                logger.warning("Position fetch for user %s failed: %s; skipping this cycle", owner, exc)
                return None
        return positions, cross

    async def _evaluate_position_alert(
        self,
        alert: Alert,
        positions: List[IsolatedPosition],
        cross: Optional[CrossPosition],
        current_price: Optional[float],
    ) -> List[Alert]:
        """Fires once per qualifying position."""
        candidates: List[IsolatedPosition | CrossPosition] = list(positions)
        if cross is not None and cross.margin > 0:
            candidates.append(cross)

        messages: List[str] = []
        if alert.kind is AlertKind.MARGIN_BELOW:
            for position in candidates:
                pl = position.pl if isinstance(position, IsolatedPosition) else position.unrealized_pl
                pct = margin_percent(position.margin, pl)
                if pct is not None and pct <= alert.target_value:
                    messages.append(render_margin_message(alert, position, pct))
        elif alert.kind is AlertKind.LIQUIDATION_DISTANCE:
            if current_price is None:
                logger.debug("No market price yet; liquidation alert %s deferred", alert.id)
                return []
            for position in candidates:
                distance = liquidation_distance(current_price, position.liquidation_price)
                if distance is not None and distance <= alert.target_value:
                    messages.append(render_liquidation_message(alert, position, distance, current_price))
        else:
            logger.warning("Skipping alert %s with unsupported kind %r on margin path", alert.id, alert.kind)
            return []

        fired: List[Alert] = []
        for message in messages:
            updated = await self._fire(alert, message)
            if updated is not None:
                fired.append(updated)
        return fired

    # --- Shared trigger rule ---

    async def _fire(self, alert: Alert, message: str) -> Optional[Alert]:
        """Delivers first; alert state advances only after a successful send."""
        try:
            delivered = await self.notifier.send(alert.owner, message)
        except Exception as exc:
            logger.error("Delivery of alert %s to %s raised: %s", alert.id, alert.owner, exc)
            delivered = False

        if not delivered:
            logger.error("Alert %s not delivered to %s; will retry next eligible cycle", alert.id, alert.owner)
            return None

        updated = await self.repository.mark_triggered(
            alert.id,
            self._clock(),
            deactivate=not alert.repeating,
        )
        self.alerts_sent += 1
        logger.info(
            "Alert %s (%s) triggered for user %s%s",
            alert.id,
            alert.kind.value,
            alert.owner,
            "" if alert.repeating else "; deactivated",
        )
        return updated or alert
