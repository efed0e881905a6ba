from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography.fernet import Fernet
from telegram.error import BadRequest

from alerts import AlertKind, NewAlert
from bot.handlers import (
    alerts_command,
    cancel_command,
    change_command,
    connect_command,
    funding_command,
    margin_command,
    price_command,
    status_command,
)
from services.lnmarkets_client import Balance, Credentials, LNMarketsAPIError
from storage import SQLiteRepository

ENCRYPTION_KEY = Fernet.generate_key()
OWNER = 1001


@pytest.fixture
def repository(tmp_path):
    return SQLiteRepository(db_path=tmp_path / "bot.db", encryption_key=ENCRYPTION_KEY)


@pytest.fixture
def feed():
    mock = MagicMock()
    mock.current_price = 100000.0
    mock.current_funding_rate = 0.0001
    return mock


@pytest.fixture
def position_client():
    client = MagicMock()
    client.get_balance = AsyncMock(return_value=Balance(balance=250000, available=200000))
    client.get_open_positions = AsyncMock(return_value=[])
    client.get_cross_position = AsyncMock(return_value=None)
    return client


@pytest.fixture
def context(repository, feed, position_client):
    ctx = MagicMock()
    ctx.args = []
    ctx.application.bot_data = {
        'repository': repository,
        'market_feed': feed,
        'position_client_factory': MagicMock(return_value=position_client),
    }
    return ctx


@pytest.fixture
def update():
    upd = MagicMock()
    upd.effective_user.id = OWNER
    upd.effective_user.username = "trader"
    upd.message.reply_text = AsyncMock()
    upd.message.reply_html = AsyncMock()
    upd.message.delete = AsyncMock()
    upd.effective_chat.send_message = AsyncMock()
    return upd


def _reply(update):
    if update.message.reply_html.await_args is not None:
        return update.message.reply_html.await_args.args[0]
    return update.message.reply_text.await_args.args[0]


@pytest.mark.asyncio
async def test_price_direction_inferred_from_current_price(update, context, repository):
    context.args = ['90,000']
    await price_command(update, context)
    context.args = ['110000', 'repeat']
    await price_command(update, context)

    alerts = await repository.list_active_alerts(owner=OWNER)
    assert [(a.kind, a.target_value, a.repeating) for a in alerts] == [
        (AlertKind.PRICE_BELOW, 90000, False),
        (AlertKind.PRICE_ABOVE, 110000, True),
    ]


@pytest.mark.asyncio
async def test_price_rejects_invalid_input(update, context, repository):
    context.args = ['abc']
    await price_command(update, context)
    assert 'Invalid price' in update.message.reply_text.await_args.args[0]

    context.args = ['-5']
    await price_command(update, context)
    assert 'greater than zero' in update.message.reply_text.await_args.args[0]

    assert await repository.list_active_alerts(owner=OWNER) == []


@pytest.mark.asyncio
async def test_funding_stores_raw_rate(update, context, repository):
    context.args = ['0.05', 'below']
    await funding_command(update, context)

    (alert,) = await repository.list_active_alerts(owner=OWNER)
    assert alert.kind is AlertKind.FUNDING_BELOW
    assert alert.target_value == pytest.approx(0.0005)
    assert '0.0500%' in _reply(update)


@pytest.mark.asyncio
async def test_change_parses_window_and_validates(update, context, repository):
    context.args = ['-5', '15', 'repeat']
    await change_command(update, context)
    (alert,) = await repository.list_active_alerts(owner=OWNER)
    assert alert.time_window == 15
    assert alert.repeating is True
    assert '15min' in _reply(update)

    context.args = ['0']
    await change_command(update, context)
    assert 'cannot be zero' in update.message.reply_text.await_args.args[0]

    context.args = ['5', '2000']
    await change_command(update, context)
    assert 'Time window' in update.message.reply_text.await_args.args[0]
    assert len(await repository.list_active_alerts(owner=OWNER)) == 1


@pytest.mark.asyncio
async def test_position_alerts_require_credentials(update, context, repository):
    context.args = ['50']
    await margin_command(update, context)

    assert 'requires connecting' in update.message.reply_text.await_args.args[0]
    assert await repository.list_active_alerts(owner=OWNER) == []

    await repository.set_credentials(OWNER, Credentials(api_key='k', api_secret='s', passphrase='p'))
    await margin_command(update, context)
    (alert,) = await repository.list_active_alerts(owner=OWNER)
    assert alert.kind is AlertKind.MARGIN_BELOW


@pytest.mark.asyncio
async def test_alerts_and_cancel_by_number(update, context, repository):
    first = await repository.insert_alert(NewAlert(owner=OWNER, kind=AlertKind.PRICE_ABOVE, target_value=100000))
    second = await repository.insert_alert(NewAlert(owner=OWNER, kind=AlertKind.PERCENT_CHANGE, target_value=-5))

    await alerts_command(update, context)
    listing = _reply(update)
    assert '1. 📈 price above $100,000' in listing
    assert '2. 📊 move -5% in 1h' in listing

    context.args = ['2']
    await cancel_command(update, context)
    remaining = await repository.list_active_alerts(owner=OWNER)
    assert [a.id for a in remaining] == [first.id]
    assert (await repository.get_alert(second.id)).active is False

    context.args = ['7']
    await cancel_command(update, context)
    assert 'not found' in update.message.reply_text.await_args.args[0]


@pytest.mark.asyncio
async def test_cancel_all(update, context, repository):
    await repository.insert_alert(NewAlert(owner=OWNER, kind=AlertKind.PRICE_ABOVE, target_value=100000))
    await repository.insert_alert(NewAlert(owner=OWNER, kind=AlertKind.PRICE_BELOW, target_value=90000))

    context.args = ['all']
    await cancel_command(update, context)

    assert '2 alert(s) cancelled' in update.message.reply_text.await_args.args[0]
    assert await repository.list_active_alerts(owner=OWNER) == []


@pytest.mark.asyncio
async def test_connect_verifies_then_stores_credentials(update, context, repository, position_client):
    update.message.delete.side_effect = BadRequest("Message can't be deleted")
    context.args = ['key', 'secret', 'pass']

    await connect_command(update, context)

    user = await repository.get_user(OWNER)
    assert user.credentials == Credentials(api_key='key', api_secret='secret', passphrase='pass')
    position_client.get_balance.assert_awaited_once()
    assert 'Account connected' in update.effective_chat.send_message.await_args.args[0]


@pytest.mark.asyncio
async def test_connect_failure_keeps_user_disconnected(update, context, repository, position_client):
    position_client.get_balance.side_effect = LNMarketsAPIError("LN Markets API error: 401 - unauthorized")
    context.args = ['key', 'secret', 'pass']

    await connect_command(update, context)

    assert (await repository.get_user(OWNER)).has_credentials is False
    assert 'Connection failed' in _reply(update)


@pytest.mark.asyncio
async def test_status_without_positions(update, context, repository):
    await repository.set_credentials(OWNER, Credentials(api_key='k', api_secret='s', passphrase='p'))

    await status_command(update, context)

    message = _reply(update)
    assert '0.00250000 BTC' in message
    assert 'No open positions' in message
