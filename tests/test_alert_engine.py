import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography.fernet import Fernet

from alert_engine import AlertEngine
from alerts.models import AlertKind, NewAlert
from services.lnmarkets_client import (
    Credentials,
    CrossPosition,
    FundingInfo,
    IsolatedPosition,
    LNMarketsAPIError,
    Ticker,
)
from services.market_feed import MarketFeed
from storage import SQLiteRepository

ENCRYPTION_KEY = Fernet.generate_key()


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeFeed:
    """Just enough of MarketFeed for the engine."""

    def __init__(self):
        self.current_price = None
        self.change = None
        self.ticker_listeners = []
        self.funding_listeners = []

    def add_ticker_listener(self, listener):
        self.ticker_listeners.append(listener)

    def add_funding_listener(self, listener):
        self.funding_listeners.append(listener)

    def remove_ticker_listener(self, listener):
        self.ticker_listeners.remove(listener)

    def remove_funding_listener(self, listener):
        self.funding_listeners.remove(listener)

    async def percent_change(self, minutes_ago):
        return self.change


def _ticker(price: float) -> Ticker:
    return Ticker(last_price=price, bid=price, ask=price, high_24h=price, low_24h=price)


def _funding(rate: float) -> FundingInfo:
    return FundingInfo(rate=rate, next_funding_time=datetime(2024, 1, 1, 16, 0, tzinfo=timezone.utc))


def _position(margin=1000.0, pl=0.0, liquidation=80000.0, position_id="p1") -> IsolatedPosition:
    return IsolatedPosition(
        id=position_id,
        side="long",
        quantity=100.0,
        margin=margin,
        leverage=10.0,
        entry_price=100000.0,
        liquidation_price=liquidation,
        pl=pl,
    )


def _position_client(positions=None, cross=None, error=None):
    client = MagicMock()
    if error is not None:
        client.get_open_positions = AsyncMock(side_effect=error)
        client.get_cross_position = AsyncMock(side_effect=error)
    else:
        client.get_open_positions = AsyncMock(return_value=positions or [])
        client.get_cross_position = AsyncMock(return_value=cross)
    return client


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repository(tmp_path):
    return SQLiteRepository(db_path=tmp_path / "alerts.db", encryption_key=ENCRYPTION_KEY)


@pytest.fixture
def feed():
    return FakeFeed()


@pytest.fixture
def notifier():
    mock = MagicMock()
    mock.send = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def clients():
    return {}


@pytest.fixture
def factory(clients):
    return MagicMock(side_effect=lambda credentials: clients[credentials.api_key])


@pytest.fixture
def engine(repository, feed, notifier, factory, clock):
    return AlertEngine(
        repository,
        feed,
        notifier,
        position_client_factory=factory,
        cooldown=timedelta(seconds=300),
        fetch_timeout=0.2,
        clock=clock,
    )


async def _connect(repository, owner):
    await repository.set_credentials(owner, Credentials(api_key=f"key-{owner}", api_secret="secret", passphrase="pass"))


# --- Price & funding path ---

@pytest.mark.asyncio
async def test_one_shot_price_alert_fires_once_then_deactivates(engine, repository, notifier, clock):
    alert = await repository.insert_alert(NewAlert(owner=1, kind=AlertKind.PRICE_ABOVE, target_value=100000))

    assert await engine.on_ticker(_ticker(99999)) == []
    notifier.send.assert_not_called()

    fired = await engine.on_ticker(_ticker(100000))
    assert [a.id for a in fired] == [alert.id]
    stored = await repository.get_alert(alert.id)
    assert stored.active is False
    assert stored.last_triggered_at == clock.now

    clock.advance(hours=2)
    assert await engine.on_ticker(_ticker(105000)) == []
    notifier.send.assert_awaited_once()
    owner, message = notifier.send.await_args.args
    assert owner == 1
    assert "above" in message and "$100,000" in message


@pytest.mark.asyncio
async def test_repeating_alert_respects_cooldown(engine, repository, notifier, clock):
    alert = await repository.insert_alert(
        NewAlert(owner=1, kind=AlertKind.PRICE_BELOW, target_value=90000, repeating=True)
    )

    await engine.on_ticker(_ticker(89000))
    first_trigger = (await repository.get_alert(alert.id)).last_triggered_at

    clock.advance(seconds=299)
    assert await engine.on_ticker(_ticker(88000)) == []
    stored = await repository.get_alert(alert.id)
    assert stored.last_triggered_at == first_trigger
    assert stored.active is True

    clock.advance(seconds=1)
    fired = await engine.on_ticker(_ticker(88000))
    assert len(fired) == 1
    assert notifier.send.await_count == 2
    assert (await repository.get_alert(alert.id)).last_triggered_at == clock.now


@pytest.mark.asyncio
async def test_delivery_failure_leaves_state_unchanged_and_retries(engine, repository, notifier):
    alert = await repository.insert_alert(NewAlert(owner=1, kind=AlertKind.PRICE_ABOVE, target_value=100000))
    notifier.send.return_value = False

    assert await engine.on_ticker(_ticker(101000)) == []
    stored = await repository.get_alert(alert.id)
    assert stored.last_triggered_at is None
    assert stored.active is True

    notifier.send.return_value = True
    fired = await engine.on_ticker(_ticker(101000))
    assert [a.id for a in fired] == [alert.id]
    assert notifier.send.await_count == 2


@pytest.mark.asyncio
async def test_notifier_exception_counts_as_failed_delivery(engine, repository, notifier):
    alert = await repository.insert_alert(NewAlert(owner=1, kind=AlertKind.PRICE_ABOVE, target_value=100000))
    notifier.send.side_effect = RuntimeError("transport down")

    assert await engine.on_ticker(_ticker(101000)) == []
    assert (await repository.get_alert(alert.id)).last_triggered_at is None


@pytest.mark.asyncio
async def test_percent_change_alerts_follow_target_direction(engine, repository, feed, notifier):
    drop_5 = await repository.insert_alert(NewAlert(owner=1, kind=AlertKind.PERCENT_CHANGE, target_value=-5, time_window=60))
    drop_3 = await repository.insert_alert(NewAlert(owner=1, kind=AlertKind.PERCENT_CHANGE, target_value=-3, time_window=60))
    await repository.insert_alert(NewAlert(owner=1, kind=AlertKind.PERCENT_CHANGE, target_value=-10, time_window=60))
    await repository.insert_alert(NewAlert(owner=1, kind=AlertKind.PERCENT_CHANGE, target_value=5, time_window=60))
    feed.change = -6.0

    fired = await engine.on_ticker(_ticker(94000))

    assert sorted(a.id for a in fired) == sorted([drop_5.id, drop_3.id])
    message = notifier.send.await_args_list[0].args[1]
    assert "-6.00%" in message
    assert "1h" in message


@pytest.mark.asyncio
async def test_percent_change_unavailable_never_triggers(engine, repository, feed, notifier):
    await repository.insert_alert(NewAlert(owner=1, kind=AlertKind.PERCENT_CHANGE, target_value=-5))
    feed.change = None

    assert await engine.on_ticker(_ticker(94000)) == []
    notifier.send.assert_not_called()


@pytest.mark.asyncio
async def test_funding_alerts_only_evaluated_on_funding_emission(engine, repository, notifier):
    above = await repository.insert_alert(NewAlert(owner=1, kind=AlertKind.FUNDING_ABOVE, target_value=0.0005))
    await repository.insert_alert(NewAlert(owner=2, kind=AlertKind.FUNDING_BELOW, target_value=-0.0001))

    assert await engine.on_ticker(_ticker(100000)) == []

    fired = await engine.on_funding(_funding(0.0006))
    assert [a.id for a in fired] == [above.id]
    assert "0.0600%" in notifier.send.await_args.args[1]


@pytest.mark.asyncio
async def test_attach_registers_feed_listeners_once(engine, feed):
    engine.attach()
    engine.attach()

    assert feed.ticker_listeners == [engine.on_ticker]
    assert feed.funding_listeners == [engine.on_funding]


# --- Margin & liquidation path ---

@pytest.mark.asyncio
async def test_failed_fetch_for_one_user_does_not_block_another(engine, repository, clients, notifier):
    await _connect(repository, 1)
    await _connect(repository, 2)
    await repository.insert_alert(NewAlert(owner=1, kind=AlertKind.MARGIN_BELOW, target_value=50))
    alert_b = await repository.insert_alert(NewAlert(owner=2, kind=AlertKind.MARGIN_BELOW, target_value=50))
    clients["key-1"] = _position_client(error=LNMarketsAPIError("401 - bad key"))
    clients["key-2"] = _position_client(positions=[_position(margin=1000, pl=-600)])

    fired = await engine.check_positions()

    assert [a.id for a in fired] == [alert_b.id]
    notifier.send.assert_awaited_once()
    assert notifier.send.await_args.args[0] == 2
    assert "40.0%" in notifier.send.await_args.args[1]


@pytest.mark.asyncio
async def test_timed_out_fetch_is_skipped(engine, repository, clients, notifier):
    await _connect(repository, 1)
    await _connect(repository, 2)
    await repository.insert_alert(NewAlert(owner=1, kind=AlertKind.MARGIN_BELOW, target_value=50))
    await repository.insert_alert(NewAlert(owner=2, kind=AlertKind.MARGIN_BELOW, target_value=50))

    async def hang():
        await asyncio.sleep(5)
        return []

    slow = _position_client()
    slow.get_open_positions = AsyncMock(side_effect=hang)
    clients["key-1"] = slow
    clients["key-2"] = _position_client(positions=[_position(margin=1000, pl=-900)])

    fired = await engine.check_positions()

    assert [a.owner for a in fired] == [2]


@pytest.mark.asyncio
async def test_one_fetch_per_user_regardless_of_alert_count(engine, repository, clients, factory, feed):
    feed.current_price = 100000.0
    await _connect(repository, 1)
    await repository.insert_alert(NewAlert(owner=1, kind=AlertKind.MARGIN_BELOW, target_value=50))
    await repository.insert_alert(NewAlert(owner=1, kind=AlertKind.LIQUIDATION_DISTANCE, target_value=10))
    client = _position_client(positions=[_position()])
    clients["key-1"] = client

    await engine.check_positions()

    factory.assert_called_once()
    client.get_open_positions.assert_awaited_once()
    client.get_cross_position.assert_awaited_once()


@pytest.mark.asyncio
async def test_alert_fires_once_per_qualifying_position(engine, repository, clients, notifier):
    await _connect(repository, 1)
    alert = await repository.insert_alert(
        NewAlert(owner=1, kind=AlertKind.MARGIN_BELOW, target_value=50, repeating=True)
    )
    clients["key-1"] = _position_client(
        positions=[
            _position(margin=1000, pl=-700, position_id="a"),
            _position(margin=1000, pl=100, position_id="b"),
        ],
        cross=CrossPosition(margin=2000, unrealized_pl=-1500, liquidation_price=None),
    )

    fired = await engine.check_positions()

    assert [a.id for a in fired] == [alert.id, alert.id]
    assert notifier.send.await_count == 2
    assert "Cross margin" in notifier.send.await_args_list[1].args[1]


@pytest.mark.asyncio
async def test_liquidation_distance_uses_current_price(engine, repository, clients, notifier, feed):
    await _connect(repository, 1)
    await repository.insert_alert(NewAlert(owner=1, kind=AlertKind.LIQUIDATION_DISTANCE, target_value=10))
    clients["key-1"] = _position_client(
        positions=[_position(liquidation=80000.0)],
        cross=CrossPosition(margin=5000, unrealized_pl=0, liquidation_price=95000.0),
    )

    feed.current_price = None
    assert await engine.check_positions() == []

    feed.current_price = 100000.0
    fired = await engine.check_positions()

    # Isolated position is 20% away, cross is 5% away.
    assert len(fired) == 1
    message = notifier.send.await_args.args[1]
    assert "Cross margin" in message
    assert "5.0%" in message


@pytest.mark.asyncio
async def test_position_alerts_inert_without_credentials(engine, repository, factory, notifier):
    await repository.insert_alert(NewAlert(owner=1, kind=AlertKind.MARGIN_BELOW, target_value=50))
    await _connect(repository, 1)
    await repository.set_credentials(1, None)

    assert await engine.check_positions() == []
    factory.assert_not_called()
    notifier.send.assert_not_called()


@pytest.mark.asyncio
async def test_position_alert_in_cooldown_skips_fetch(engine, repository, clients, factory, clock):
    await _connect(repository, 1)
    await repository.insert_alert(NewAlert(owner=1, kind=AlertKind.MARGIN_BELOW, target_value=50, repeating=True))
    clients["key-1"] = _position_client(positions=[_position(margin=1000, pl=-800)])

    assert len(await engine.check_positions()) == 1
    clock.advance(seconds=60)
    assert await engine.check_positions() == []

    factory.assert_called_once()


@pytest.mark.asyncio
async def test_start_and_stop_margin_loop(repository, feed, notifier, factory):
    engine = AlertEngine(
        repository,
        feed,
        notifier,
        position_client_factory=factory,
        margin_interval=0.01,
    )

    engine.start()
    engine.start()
    assert engine.is_running
    await asyncio.sleep(0.05)
    await engine.stop()
    await engine.stop()

    assert not engine.is_running
    assert engine.last_margin_check is not None
    assert feed.ticker_listeners == []
    assert feed.funding_listeners == []


@pytest.mark.asyncio
async def test_stopped_engine_ignores_feed_emissions(repository, notifier, factory, clock):
    market_client = MagicMock()
    market_client.get_ticker = AsyncMock(return_value=_ticker(200))
    market_client.get_funding = AsyncMock(return_value=_funding(0.001))
    market_feed = MarketFeed(market_client, clock=clock)
    engine = AlertEngine(repository, market_feed, notifier, position_client_factory=factory, clock=clock)
    await repository.insert_alert(NewAlert(owner=1, kind=AlertKind.PRICE_ABOVE, target_value=100))
    await repository.insert_alert(NewAlert(owner=1, kind=AlertKind.FUNDING_ABOVE, target_value=0.0005))

    engine.start()
    await engine.stop()
    await market_feed.poll()

    notifier.send.assert_not_called()
    # An emission already in flight when stop() ran is dropped as well.
    assert await engine.on_ticker(_ticker(200)) == []
    assert await engine.on_funding(_funding(0.001)) == []

    engine.start()
    await market_feed.poll()
    await engine.stop()
    assert notifier.send.await_count == 2


@pytest.mark.asyncio
async def test_alert_cancelled_during_position_fetch_is_not_delivered(engine, repository, clients, notifier):
    await _connect(repository, 1)
    alert = await repository.insert_alert(NewAlert(owner=1, kind=AlertKind.MARGIN_BELOW, target_value=50))

    async def positions_then_cancel():
        await repository.deactivate_alert(1, alert.id)
        return [_position(margin=1000, pl=-900)]

    client = _position_client()
    client.get_open_positions = AsyncMock(side_effect=positions_then_cancel)
    clients["key-1"] = client

    assert await engine.check_positions() == []
    notifier.send.assert_not_called()


@pytest.mark.asyncio
async def test_margin_delivery_failure_leaves_state_unchanged(engine, repository, clients, notifier):
    await _connect(repository, 1)
    alert = await repository.insert_alert(NewAlert(owner=1, kind=AlertKind.MARGIN_BELOW, target_value=50))
    clients["key-1"] = _position_client(positions=[_position(margin=1000, pl=-900)])
    notifier.send.return_value = False

    assert await engine.check_positions() == []
    stored = await repository.get_alert(alert.id)
    assert stored.last_triggered_at is None
    assert stored.active is True

    notifier.send.return_value = True
    assert [a.id for a in await engine.check_positions()] == [alert.id]
    assert (await repository.get_alert(alert.id)).active is False
