#!/usr/bin/env python3
"""Pure trigger predicates, cooldown gating and message rendering shared by both engine paths."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from alerts.models import Alert, AlertKind
from services.lnmarkets_client import CrossPosition, IsolatedPosition


def cooldown_elapsed(alert: Alert, now: datetime, cooldown: timedelta) -> bool:
    if alert.last_triggered_at is None:
        return True
    return now - alert.last_triggered_at >= cooldown


def price_triggered(alert: Alert, price: float) -> bool:
    if alert.kind is AlertKind.PRICE_ABOVE:
        return price >= alert.target_value
    if alert.kind is AlertKind.PRICE_BELOW:
        return price <= alert.target_value
    return False


def funding_triggered(alert: Alert, rate: float) -> bool:
    if alert.kind is AlertKind.FUNDING_ABOVE:
        return rate >= alert.target_value
    if alert.kind is AlertKind.FUNDING_BELOW:
        return rate <= alert.target_value
    return False


def percent_change_triggered(target: float, change: Optional[float]) -> bool:
    """Negative targets watch for drops, positive targets for rises."""
    if change is None:
        return False
    return (target < 0 and change <= target) or (target > 0 and change >= target)


def margin_percent(margin: float, pl: float) -> Optional[float]:
    if margin <= 0:
        return None
    return (margin + pl) / margin * 100


def liquidation_distance(current_price: float, liquidation_price: Optional[float]) -> Optional[float]:
    if not current_price or not liquidation_price:
        return None
    return abs(current_price - liquidation_price) / current_price * 100


# --- Message rendering (Telegram HTML) ---

def format_usd(value: float) -> str:
    return f"${value:,.0f}" if abs(value) >= 100 else f"${value:,.2f}"


def format_window(minutes: int) -> str:
    if minutes >= 60 and minutes % 60 == 0:
        return f"{minutes // 60}h"
    return f"{minutes}min"


def format_funding(rate: float) -> str:
    return f"{rate * 100:.4f}%"


def render_price_message(alert: Alert, price: float) -> str:
    above = alert.kind is AlertKind.PRICE_ABOVE
    return (
        f"{'📈' if above else '📉'} <b>Price Alert!</b>\n\n"
        f"BTC is now {'above' if above else 'below'} <b>{format_usd(alert.target_value)}</b>\n\n"
        f"Current: {format_usd(price)}"
    )


def render_funding_message(alert: Alert, rate: float) -> str:
    above = alert.kind is AlertKind.FUNDING_ABOVE
    return (
        f"💰 <b>Funding Rate Alert!</b>\n\n"
        f"Funding rate is now {'above' if above else 'below'} <b>{format_funding(alert.target_value)}</b>\n\n"
        f"Current: {format_funding(rate)}"
    )


def render_percent_change_message(alert: Alert, change: float, price: float) -> str:
    emoji = '📉' if change < 0 else '📈'
    return (
        f"{emoji} <b>Price Movement Alert!</b>\n\n"
        f"BTC has moved <b>{change:+.2f}%</b> in the last {format_window(alert.window_minutes)}\n\n"
        f"Current: {format_usd(price)}"
    )


def _describe_position(position: IsolatedPosition | CrossPosition) -> str:
    if isinstance(position, IsolatedPosition):
        return f"{position.side.upper()} {position.leverage:g}x (entry {format_usd(position.entry_price)})"
    return "Cross margin"


def render_margin_message(alert: Alert, position: IsolatedPosition | CrossPosition, margin_pct: float) -> str:
    return (
        f"⚠️ <b>Margin Alert!</b>\n\n"
        f"{_describe_position(position)}\n"
        f"Margin level is <b>{margin_pct:.1f}%</b> (threshold {alert.target_value:g}%)\n"
        f"Margin: {position.margin:,.0f} sats"
    )


def render_liquidation_message(
    alert: Alert,
    position: IsolatedPosition | CrossPosition,
    distance: float,
    current_price: float,
) -> str:
    return (
        f"🚨 <b>Liquidation Alert!</b>\n\n"
        f"{_describe_position(position)}\n"
        f"Liquidation at <b>{format_usd(position.liquidation_price)}</b> is only <b>{distance:.1f}%</b> away "
        f"(threshold {alert.target_value:g}%)\n\n"
        f"Current: {format_usd(current_price)}"
    )
