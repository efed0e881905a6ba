#!/usr/bin/env python3
"""Alert definitions shared by the store, the engine and the chat handlers."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from constants import DEFAULT_TIME_WINDOW_MINUTES, MAX_TIME_WINDOW_MINUTES


class InvalidAlertError(ValueError):
    """Raised when an alert definition is rejected at creation time."""


class AlertKind(str, Enum):
    PRICE_ABOVE = 'price_above'
    PRICE_BELOW = 'price_below'
    FUNDING_ABOVE = 'funding_above'
    FUNDING_BELOW = 'funding_below'
    PERCENT_CHANGE = 'percent_change'
    MARGIN_BELOW = 'margin_below'
    LIQUIDATION_DISTANCE = 'liquidation_distance'


# Kinds evaluated on each ticker emission.
TICKER_KINDS = frozenset({AlertKind.PRICE_ABOVE, AlertKind.PRICE_BELOW, AlertKind.PERCENT_CHANGE})
FUNDING_KINDS = frozenset({AlertKind.FUNDING_ABOVE, AlertKind.FUNDING_BELOW})
# Kinds that need the owner's credentials and run on the margin timer.
POSITION_KINDS = frozenset({AlertKind.MARGIN_BELOW, AlertKind.LIQUIDATION_DISTANCE})


@dataclass(frozen=True, slots=True)
class Alert:
    id: int
    owner: int
    kind: AlertKind
    target_value: float
    time_window: Optional[int] = None
    repeating: bool = False
    active: bool = True
    last_triggered_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def window_minutes(self) -> int:
        return self.time_window or DEFAULT_TIME_WINDOW_MINUTES


@dataclass(frozen=True, slots=True)
class NewAlert:
    """An alert as requested by a user, before the store assigns an id."""
    owner: int
    kind: AlertKind
    target_value: float
    time_window: Optional[int] = None
    repeating: bool = False


def validate_new_alert(alert: NewAlert) -> NewAlert:
    """Rejects malformed definitions so the engine only sees well-formed alerts."""
    kind = alert.kind
    target = alert.target_value

    if target != target:  # NaN
        raise InvalidAlertError("Target value must be a number.")

    if alert.time_window is not None and kind is not AlertKind.PERCENT_CHANGE:
        raise InvalidAlertError("Only percent change alerts take a time window.")

    if kind in (AlertKind.PRICE_ABOVE, AlertKind.PRICE_BELOW):
        if target <= 0:
            raise InvalidAlertError("Price must be greater than zero.")
    elif kind is AlertKind.PERCENT_CHANGE:
        if target == 0:
            raise InvalidAlertError("Percent change cannot be zero; use a negative value for drops and a positive value for rises.")
        if abs(target) > 100:
            raise InvalidAlertError("Percent change must be between -100 and 100.")
        if alert.time_window is not None and not 1 <= alert.time_window <= MAX_TIME_WINDOW_MINUTES:
            raise InvalidAlertError(f"Time window must be between 1 and {MAX_TIME_WINDOW_MINUTES} minutes.")
    elif kind in POSITION_KINDS:
        if not 0 < target <= 100:
            raise InvalidAlertError("Percentage must be between 0 and 100.")
    return alert
