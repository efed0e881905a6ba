#!/usr/bin/env python3
"""LN Markets REST clients: the public market client and the signed per-user position client."""
from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp

from constants import (
    CROSS_POSITION_PATH,
    DEFAULT_HTTP_TIMEOUT,
    LNMARKETS_API_BASE_URL,
    MARKET_PATH,
    RUNNING_POSITIONS_PATH,
    TICKER_PATH,
    USER_PATH,
)


class LNMarketsAPIError(Exception):
    """Transport, timeout or non-2xx failure talking to LN Markets."""


class LNMarketsAuthError(LNMarketsAPIError):
    """Raised when an authenticated call is attempted without usable credentials."""


@dataclass(frozen=True, slots=True)
class Credentials:
    api_key: str
    api_secret: str
    passphrase: str

    def __repr__(self) -> str:
        return f"Credentials(api_key='{self.api_key[:4]}...')"


@dataclass(frozen=True, slots=True)
class Ticker:
    last_price: float
    bid: float
    ask: float
    high_24h: float
    low_24h: float


@dataclass(frozen=True, slots=True)
class FundingInfo:
    rate: float
    next_funding_time: datetime


@dataclass(frozen=True, slots=True)
class Balance:
    balance: int
    available: int


@dataclass(frozen=True, slots=True)
class IsolatedPosition:
    id: str
    side: str  # 'long' or 'short'
    quantity: float
    margin: float
    leverage: float
    entry_price: float
    liquidation_price: float
    pl: float

    @property
    def pl_percent(self) -> float:
        return (self.pl / self.margin) * 100 if self.margin else 0.0


@dataclass(frozen=True, slots=True)
class CrossPosition:
    margin: float
    unrealized_pl: float
    liquidation_price: Optional[float]


async def api_request(
    session: aiohttp.ClientSession,
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    body: Optional[str] = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> Any:
    """Makes a single request and returns decoded JSON; every failure becomes LNMarketsAPIError."""
    try:
        async with session.request(
            method,
            url,
            headers=headers,
            data=body,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as response:
            if response.status >= 400:
                detail = await response.text()
                raise LNMarketsAPIError(f"LN Markets API error: {response.status} - {detail}")
            return await response.json()
    except asyncio.TimeoutError as exc:
        raise LNMarketsAPIError(f"LN Markets request timed out after {timeout}s: {method} {url}") from exc
    except aiohttp.ClientError as exc:
        raise LNMarketsAPIError(f"LN Markets request failed: {exc}") from exc


class MarketClient:
    """Public, unauthenticated market data."""

    def __init__(self, session: aiohttp.ClientSession, base_url: str = LNMARKETS_API_BASE_URL, timeout: float = DEFAULT_HTTP_TIMEOUT):
        self.session = session
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    async def get_ticker(self) -> Ticker:
        data = await api_request(self.session, 'GET', f"{self.base_url}{TICKER_PATH}", timeout=self.timeout)
        try:
            return Ticker(
                last_price=float(data['lastPrice']),
                bid=float(data['bid']),
                ask=float(data['offer']),
                high_24h=float(data['high']),
                low_24h=float(data['low']),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise LNMarketsAPIError(f"Could not parse ticker response: {data}") from exc

    async def get_funding(self) -> FundingInfo:
        data = await api_request(self.session, 'GET', f"{self.base_url}{MARKET_PATH}", timeout=self.timeout)
        try:
            return FundingInfo(
                rate=float(data['rate']),
                next_funding_time=datetime.fromtimestamp(int(data['nextFundingTime']) / 1000, tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise LNMarketsAPIError(f"Could not parse funding response: {data}") from exc


def sign_request(secret: str, timestamp: str, method: str, path: str, body: str = '') -> str:
    """HMAC-SHA256 over timestamp + method + path + body, base64 encoded."""
    message = f"{timestamp}{method}{path}{body}".encode()
    digest = hmac.new(secret.encode(), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


class PositionClient:
    """Authenticated client for one credential set. Cheap to build; construct one per check."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        credentials: Optional[Credentials],
        base_url: str = LNMARKETS_API_BASE_URL,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ):
        if credentials is None or not (credentials.api_key and credentials.api_secret and credentials.passphrase):
            raise LNMarketsAuthError("Authentication required")
        self.session = session
        self.credentials = credentials
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    async def _signed_get(self, path: str) -> Any:
        timestamp = str(int(time.time() * 1000))
        headers = {
            'Content-Type': 'application/json',
            'LNM-ACCESS-KEY': self.credentials.api_key,
            'LNM-ACCESS-PASSPHRASE': self.credentials.passphrase,
            'LNM-ACCESS-TIMESTAMP': timestamp,
            'LNM-ACCESS-SIGNATURE': sign_request(self.credentials.api_secret, timestamp, 'GET', path),
        }
        return await api_request(self.session, 'GET', f"{self.base_url}{path}", headers=headers, timeout=self.timeout)

    async def get_balance(self) -> Balance:
        data = await self._signed_get(USER_PATH)
        try:
            return Balance(balance=int(data['balance']), available=int(data.get('available', data['balance'])))
        except (KeyError, TypeError, ValueError) as exc:
            raise LNMarketsAPIError(f"Could not parse user response: {json.dumps(data)[:200]}") from exc

    async def get_open_positions(self) -> List[IsolatedPosition]:
        data = await self._signed_get(RUNNING_POSITIONS_PATH)
        if not isinstance(data, list):
            raise LNMarketsAPIError(f"Unexpected positions response: {json.dumps(data)[:200]}")
        positions: List[IsolatedPosition] = []
        for item in data:
            try:
                positions.append(
                    IsolatedPosition(
                        id=str(item['id']),
                        side='long' if item['side'] == 'b' else 'short',
                        quantity=float(item.get('quantity', 0)),
                        margin=float(item['margin']),
                        leverage=float(item['leverage']),
                        entry_price=float(item['price']),
                        liquidation_price=float(item['liquidation']),
                        pl=float(item.get('pl', 0)),
                    )
                )
            except (KeyError, TypeError, ValueError) as exc:
                raise LNMarketsAPIError(f"Could not parse position: {item}") from exc
        return positions

    async def get_cross_position(self) -> Optional[CrossPosition]:
        data = await self._signed_get(CROSS_POSITION_PATH)
        if not data:
            return None
        if not isinstance(data, dict):
            raise LNMarketsAPIError(f"Unexpected cross position response: {json.dumps(data)[:200]}")
        try:
            margin = float(data.get('margin') or 0)
            if not margin:
                return None
            liquidation = data.get('liquidation_price')
            return CrossPosition(
                margin=margin,
                unrealized_pl=float(data.get('unrealized_pl') or 0),
                liquidation_price=float(liquidation) if liquidation else None,
            )
        except (TypeError, ValueError) as exc:
            raise LNMarketsAPIError(f"Could not parse cross position: {data}") from exc
