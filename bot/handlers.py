# bot/handlers.py
import asyncio
import logging
import time
from typing import Optional

from telegram import Update
from telegram.error import TelegramError
from telegram.ext import ContextTypes

from alerts.evaluator import format_funding, format_usd, format_window, liquidation_distance
from alerts.models import Alert, AlertKind, InvalidAlertError, NewAlert
from constants import SATS_PER_BTC
from services.lnmarkets_client import Credentials, LNMarketsAPIError, PositionClient
from storage import SQLiteRepository
from storage.models import UserRecord

logger = logging.getLogger(__name__)

ALERT_EMOJI = {
    AlertKind.PRICE_ABOVE: '📈',
    AlertKind.PRICE_BELOW: '📉',
    AlertKind.FUNDING_ABOVE: '💰',
    AlertKind.FUNDING_BELOW: '💰',
    AlertKind.PERCENT_CHANGE: '📊',
    AlertKind.MARGIN_BELOW: '⚠️',
    AlertKind.LIQUIDATION_DISTANCE: '🚨',
}


def _repository(context: ContextTypes.DEFAULT_TYPE) -> SQLiteRepository:
    return context.application.bot_data['repository']


async def _current_user(update: Update, context: ContextTypes.DEFAULT_TYPE) -> UserRecord:
    user = update.effective_user
    return await _repository(context).ensure_user(user.id, user.username)


def _parse_number(raw: str) -> Optional[float]:
    try:
        value = float(raw.replace(',', ''))
    except ValueError:
        return None
    return value if value == value else None


def _flags(args: list[str]) -> set[str]:
    return {arg.lower() for arg in args[1:]}


async def _create_alert(update: Update, context: ContextTypes.DEFAULT_TYPE, alert: NewAlert) -> Optional[Alert]:
    try:
        return await _repository(context).insert_alert(alert)
    except InvalidAlertError as exc:
        await update.message.reply_text(f"❌ {exc}")
        return None


def _repeat_note(repeating: bool) -> str:
    return '🔁 This alert will repeat.' if repeating else '☝️ This alert will fire once.'


def describe_alert(alert: Alert) -> str:
    kind = alert.kind
    if kind in (AlertKind.PRICE_ABOVE, AlertKind.PRICE_BELOW):
        detail = f"price {'above' if kind is AlertKind.PRICE_ABOVE else 'below'} {format_usd(alert.target_value)}"
    elif kind in (AlertKind.FUNDING_ABOVE, AlertKind.FUNDING_BELOW):
        detail = f"funding {'above' if kind is AlertKind.FUNDING_ABOVE else 'below'} {format_funding(alert.target_value)}"
    elif kind is AlertKind.PERCENT_CHANGE:
        detail = f"move {alert.target_value:+g}% in {format_window(alert.window_minutes)}"
    elif kind is AlertKind.MARGIN_BELOW:
        detail = f"margin below {alert.target_value:g}%"
    else:
        detail = f"liquidation within {alert.target_value:g}%"
    return f"{ALERT_EMOJI[kind]} {detail}{' 🔁' if alert.repeating else ''}"


# --- Command Handlers ---

async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Displays a help message with all available commands."""
    await _current_user(update, context)
    feed = context.application.bot_data.get('market_feed')
    price = feed.current_price if feed else None
    price_info = f"\n📊 Current BTC price: {format_usd(price)}\n" if price else ""

    help_text = f"""
    👋 <b>Welcome to the LN Markets Alert Bot!</b>
    {price_info}
    <b><u>Public Commands:</u></b>
    /price &lt;amount&gt; [below] [repeat] - Alert when BTC hits a price
    /funding &lt;rate%&gt; [below] [repeat] - Alert on the funding rate
    /change &lt;percent&gt; [minutes] [repeat] - Alert on a move, e.g. /change -5 60
    /ticker - Current price &amp; funding
    /alerts - View your alerts
    /cancel &lt;number|all&gt; - Cancel alerts

    <b><u>Private Commands (requires API key):</u></b>
    /connect - Link your LN Markets account
    /disconnect - Remove your API credentials
    /status - View your positions
    /margin &lt;%&gt; [repeat] - Alert on low margin
    /liquidation &lt;%&gt; [repeat] - Alert when liquidation is near
    /info - Bot status
    """
    await update.message.reply_html(help_text)


async def ticker_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Shows the latest ticker and funding snapshot."""
    feed = context.application.bot_data['market_feed']
    ticker = feed.ticker
    funding = feed.funding

    if not ticker:
        await update.message.reply_text('⏳ Price feed not available yet. Try again in a moment.')
        return

    funding_rate = format_funding(funding.rate) if funding else 'N/A'
    next_funding = funding.next_funding_time.strftime('%H:%M UTC') if funding else 'N/A'

    await update.message.reply_html(
        f"📊 <b>BTC/USD Ticker</b>\n\n"
        f"Price: <b>{format_usd(ticker.last_price)}</b>\n"
        f"24h High: {format_usd(ticker.high_24h)}\n"
        f"24h Low: {format_usd(ticker.low_24h)}\n"
        f"Bid: {format_usd(ticker.bid)}\n"
        f"Ask: {format_usd(ticker.ask)}\n\n"
        f"💰 <b>Funding</b>\n"
        f"Rate: {funding_rate}\n"
        f"Next: {next_funding}"
    )


async def price_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Creates a price_above / price_below alert."""
    args = context.args or []
    if not args:
        await update.message.reply_html(
            '📈 <b>Price Alerts</b>\n\n'
            'Set an alert when BTC reaches a specific price.\n\n'
            '<b>Usage:</b>\n'
            '/price 100000 - Alert when price hits $100,000\n'
            '/price 90000 below - Alert when price drops to $90,000\n\n'
            'Alerts fire once by default. Add "repeat" for recurring alerts.'
        )
        return

    target = _parse_number(args[0])
    if target is None:
        await update.message.reply_text('❌ Invalid price. Please enter a number like: /price 100000')
        return

    user = await _current_user(update, context)
    flags = _flags(args)
    current_price = context.application.bot_data['market_feed'].current_price or 0
    if 'below' in flags or ('above' not in flags and target < current_price):
        kind = AlertKind.PRICE_BELOW
    else:
        kind = AlertKind.PRICE_ABOVE
    repeating = 'repeat' in flags

    alert = await _create_alert(update, context, NewAlert(owner=user.owner, kind=kind, target_value=target, repeating=repeating))
    if alert is None:
        return

    direction = 'above' if kind is AlertKind.PRICE_ABOVE else 'below'
    await update.message.reply_html(
        f"{ALERT_EMOJI[kind]} <b>Price alert set!</b>\n\n"
        f"You'll be notified when BTC goes {direction} <b>{format_usd(target)}</b>\n"
        f"Current price: {format_usd(current_price)}\n\n"
        f"{_repeat_note(repeating)}"
    )


async def funding_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Creates a funding_above / funding_below alert. The rate is entered in percent."""
    args = context.args or []
    feed = context.application.bot_data['market_feed']
    if not args:
        rate = feed.current_funding_rate
        await update.message.reply_html(
            '💰 <b>Funding Rate Alerts</b>\n\n'
            f"Current rate: {format_funding(rate) if rate is not None else 'N/A'}\n\n"
            '<b>Usage:</b>\n'
            '/funding 0.05 - Alert when rate exceeds 0.05%\n'
            '/funding -0.02 below - Alert when rate drops below -0.02%'
        )
        return

    target_percent = _parse_number(args[0])
    if target_percent is None:
        await update.message.reply_text('❌ Invalid rate. Please enter a number like: /funding 0.05')
        return

    user = await _current_user(update, context)
    flags = _flags(args)
    kind = AlertKind.FUNDING_BELOW if 'below' in flags else AlertKind.FUNDING_ABOVE
    repeating = 'repeat' in flags

    alert = await _create_alert(
        update,
        context,
        NewAlert(owner=user.owner, kind=kind, target_value=target_percent / 100, repeating=repeating),
    )
    if alert is None:
        return

    direction = 'above' if kind is AlertKind.FUNDING_ABOVE else 'below'
    await update.message.reply_html(
        f"💰 <b>Funding alert set!</b>\n\n"
        f"You'll be notified when the funding rate goes {direction} <b>{format_funding(alert.target_value)}</b>\n\n"
        f"{_repeat_note(repeating)}"
    )


async def change_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Creates a percent_change alert: negative targets watch for drops, positive for rises."""
    args = context.args or []
    if not args:
        await update.message.reply_html(
            '📊 <b>Price Movement Alerts</b>\n\n'
            'Get notified when BTC moves by a percentage within a time window.\n\n'
            '<b>Usage:</b>\n'
            '/change -5 - Alert on a 5% drop within 1h\n'
            '/change 3 15 - Alert on a 3% rise within 15 minutes\n'
            '/change -10 240 repeat - Repeating alert on a 10% drop within 4h'
        )
        return

    target = _parse_number(args[0])
    if target is None:
        await update.message.reply_text('❌ Invalid percentage. Please enter a number like: /change -5 60')
        return

    time_window = None
    if len(args) > 1 and args[1].lower() != 'repeat':
        try:
            time_window = int(args[1])
        except ValueError:
            await update.message.reply_text('❌ Invalid time window. Please enter minutes, e.g. /change -5 60')
            return

    user = await _current_user(update, context)
    repeating = 'repeat' in _flags(args)
    alert = await _create_alert(
        update,
        context,
        NewAlert(
            owner=user.owner,
            kind=AlertKind.PERCENT_CHANGE,
            target_value=target,
            time_window=time_window,
            repeating=repeating,
        ),
    )
    if alert is None:
        return

    movement = 'drops' if target < 0 else 'rises'
    await update.message.reply_html(
        f"📊 <b>Movement alert set!</b>\n\n"
        f"You'll be notified when BTC {movement} <b>{abs(target):g}%</b> within {format_window(alert.window_minutes)}\n\n"
        f"{_repeat_note(repeating)}"
    )


async def _require_credentials(update: Update, context: ContextTypes.DEFAULT_TYPE) -> Optional[UserRecord]:
    user = await _current_user(update, context)
    if not user.has_credentials:
        await update.message.reply_text(
            '🔒 This feature requires connecting your LN Markets account.\n\n'
            'Use /connect to link your API credentials.'
        )
        return None
    return user


async def _position_alert_command(
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
    kind: AlertKind,
    usage: str,
    confirmation: str,
):
    user = await _require_credentials(update, context)
    if user is None:
        return

    args = context.args or []
    if not args:
        await update.message.reply_html(usage)
        return

    target = _parse_number(args[0])
    if target is None:
        await update.message.reply_text('❌ Invalid percentage. Please enter a number between 1-100.')
        return

    repeating = 'repeat' in _flags(args)
    alert = await _create_alert(update, context, NewAlert(owner=user.owner, kind=kind, target_value=target, repeating=repeating))
    if alert is None:
        return
    await update.message.reply_html(confirmation.format(target=f"{target:g}") + f"\n\n{_repeat_note(repeating)}")


async def margin_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Creates a margin_below alert."""
    await _position_alert_command(
        update,
        context,
        AlertKind.MARGIN_BELOW,
        '⚠️ <b>Margin Alerts</b>\n\n'
        'Get notified when your margin drops below a threshold.\n\n'
        '<b>Usage:</b>\n'
        '/margin 50 - Alert when margin drops below 50%\n'
        '/margin 30 repeat - Repeating alert at 30%',
        "⚠️ <b>Margin alert set!</b>\n\n"
        "You'll be notified when any position's margin drops below <b>{target}%</b>",
    )


async def liquidation_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Creates a liquidation_distance alert."""
    await _position_alert_command(
        update,
        context,
        AlertKind.LIQUIDATION_DISTANCE,
        '🚨 <b>Liquidation Distance Alerts</b>\n\n'
        'Get notified when price approaches your liquidation level.\n\n'
        '<b>Usage:</b>\n'
        '/liquidation 10 - Alert when liquidation is 10% away\n'
        '/liquidation 5 repeat - Repeating alert at 5%',
        "🚨 <b>Liquidation alert set!</b>\n\n"
        "You'll be notified when any position is within <b>{target}%</b> of liquidation",
    )


async def alerts_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Lists the caller's active alerts."""
    user = await _current_user(update, context)
    alerts = await _repository(context).list_active_alerts(owner=user.owner)

    if not alerts:
        await update.message.reply_text(
            '📭 You have no active alerts.\n\n'
            'Use /price, /funding or /change to create one!'
        )
        return

    lines = [f"{i}. {describe_alert(alert)}" for i, alert in enumerate(alerts, start=1)]
    await update.message.reply_html(
        "🔔 <b>Your Active Alerts</b>\n\n"
        + "\n".join(lines)
        + "\n\nUse /cancel &lt;number&gt; to remove an alert."
    )


async def cancel_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Deactivates one alert by its /alerts number, or all of them."""
    user = await _current_user(update, context)
    repository = _repository(context)
    args = context.args or []

    if not args or args[0].lower() == 'all':
        count = await repository.deactivate_all(user.owner)
        await update.message.reply_text(f'✅ {count} alert(s) cancelled.')
        return

    try:
        index = int(args[0])
    except ValueError:
        await update.message.reply_text('❌ Please give the alert number from /alerts, or "all".')
        return

    alerts = await repository.list_active_alerts(owner=user.owner)
    if not 1 <= index <= len(alerts):
        await update.message.reply_text(f'❌ Alert #{index} not found. Use /alerts to see your alerts.')
        return

    alert = alerts[index - 1]
    await repository.deactivate_alert(user.owner, alert.id)
    await update.message.reply_html(f"✅ Cancelled: {describe_alert(alert)}")


async def connect_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Verifies and stores LN Markets API credentials."""
    args = context.args or []
    if len(args) < 3:
        await update.message.reply_html(
            '🔐 <b>Connect Your LN Markets Account</b>\n\n'
            'To use private features, you need to link your API credentials.\n\n'
            '<b>Usage:</b>\n'
            '<code>/connect API_KEY API_SECRET PASSPHRASE</code>\n\n'
            '⚠️ <b>Security Notes:</b>\n'
            '• Create a read-only API key for safety\n'
            '• Delete this message after connecting\n'
            '• Get your keys at: https://lnmarkets.com/user/api'
        )
        return

    user = await _current_user(update, context)
    credentials = Credentials(api_key=args[0], api_secret=args[1], passphrase=args[2])
    factory = context.application.bot_data['position_client_factory']

    try:
        await factory(credentials).get_balance()
    except LNMarketsAPIError as exc:
        await update.message.reply_html(
            '❌ <b>Connection failed</b>\n\n'
            'Could not authenticate with LN Markets. Please check your credentials.\n\n'
            f'Error: {exc}'
        )
        return

    await _repository(context).set_credentials(user.owner, credentials)

    try:
        await update.message.delete()
    except TelegramError:
        logger.debug("Could not delete credentials message for %s", user.owner)

    await update.effective_chat.send_message(
        '✅ <b>Account connected!</b>\n\n'
        'You now have access to:\n'
        '• /status - View your positions\n'
        '• /margin - Set margin alerts\n'
        '• /liquidation - Set liquidation alerts',
        parse_mode='HTML',
    )


async def disconnect_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Removes stored credentials; margin/liquidation alerts stay stored but inert."""
    user = await _current_user(update, context)
    await _repository(context).set_credentials(user.owner, None)
    await update.message.reply_text(
        '✅ Account disconnected. Your API credentials have been removed.\n\n'
        'You can still use public features like price alerts.'
    )


async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Shows balance and open positions for a connected account."""
    user = await _require_credentials(update, context)
    if user is None:
        return

    client: PositionClient = context.application.bot_data['position_client_factory'](user.credentials)
    try:
        balance, positions, cross = await asyncio.gather(
            client.get_balance(),
            client.get_open_positions(),
            client.get_cross_position(),
        )
    except LNMarketsAPIError as exc:
        await update.message.reply_text(f'❌ Error fetching status: {exc}')
        return

    current_price = context.application.bot_data['market_feed'].current_price or 0
    message = (
        f"📊 <b>Account Status</b>\n\n"
        f"💰 Balance: <b>{balance.balance / SATS_PER_BTC:.8f} BTC</b>\n"
        f"   ({balance.balance:,} sats)\n"
        f"📈 Available: {balance.available:,} sats\n"
    )
    if current_price:
        message += f"\n💵 BTC Price: {format_usd(current_price)}\n"

    if positions:
        message += "\n<b>Isolated Positions:</b>\n"
        for pos in positions:
            pl_emoji = '🟢' if pos.pl >= 0 else '🔴'
            distance = liquidation_distance(current_price, pos.liquidation_price)
            distance_str = f" ({distance:.1f}% away)" if distance is not None else ""
            message += (
                f"\n{'📈' if pos.side == 'long' else '📉'} <b>{pos.side.upper()}</b> {pos.leverage:g}x\n"
                f"   Entry: {format_usd(pos.entry_price)}\n"
                f"   Margin: {pos.margin:,.0f} sats\n"
                f"   {pl_emoji} P&amp;L: {pos.pl:,.0f} sats ({pos.pl_percent:.1f}%)\n"
                f"   🚨 Liq: {format_usd(pos.liquidation_price)}{distance_str}\n"
            )

    if cross:
        pl_emoji = '🟢' if cross.unrealized_pl >= 0 else '🔴'
        message += (
            f"\n<b>Cross Margin:</b>\n"
            f"   Margin: {cross.margin:,.0f} sats\n"
            f"   {pl_emoji} Unrealized P&amp;L: {cross.unrealized_pl:,.0f} sats\n"
        )
        distance = liquidation_distance(current_price, cross.liquidation_price)
        if distance is not None:
            message += f"   🚨 Liq: {format_usd(cross.liquidation_price)} ({distance:.1f}% away)\n"

    if not positions and not cross:
        message += "\n<i>No open positions</i>"

    await update.message.reply_html(message)


async def info_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Reports the bot's operational status: feed, engine and uptime."""
    bot_data = context.application.bot_data
    feed = bot_data.get('market_feed')
    engine = bot_data.get('alert_engine')
    start_time = bot_data.get('start_time', time.time())

    uptime_str = time.strftime('%H:%M:%S', time.gmtime(time.time() - start_time))
    feed_status = "✅ Running" if feed and feed.is_running else "⏹️ Stopped"
    engine_status = "✅ Running" if engine and engine.is_running else "⏹️ Stopped"

    status_text = (
        f"<b>🤖 Bot Status</b>\n"
        f"Uptime: <code>{uptime_str}</code>\n\n"
        f"<b>📡 Market Feed</b>\n"
        f"Status: {feed_status}\n"
    )
    if feed and feed.state.ticker_updated_at:
        status_text += f"Last Price: <code>{feed.state.ticker_updated_at.strftime('%Y-%m-%d %H:%M:%S')} UTC</code>\n"
    status_text += f"\n<b>🔔 Alert Engine</b>\nStatus: {engine_status}\n"
    if engine:
        if engine.last_margin_check:
            status_text += f"Last Margin Check: <code>{engine.last_margin_check.strftime('%Y-%m-%d %H:%M:%S')} UTC</code>\n"
        status_text += f"Alerts Sent: <code>{engine.alerts_sent}</code>\n"

    await update.message.reply_html(status_text)
