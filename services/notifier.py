#!/usr/bin/env python3
"""Delivery transports used by the alert engine: send(owner, text) -> bool."""
from __future__ import annotations

import logging
from typing import Protocol

from telegram import Bot
from telegram.error import TelegramError

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send(self, owner: int, text: str) -> bool: ...


class TelegramNotifier:
    """Sends HTML messages through the bot; a failed send is logged, never raised."""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def send(self, owner: int, text: str) -> bool:
        try:
            await self.bot.send_message(chat_id=owner, text=text, parse_mode='HTML')
        except TelegramError as exc:
            logger.error("Telegram delivery to %s failed: %s", owner, exc)
            return False
        return True


class LoggingNotifier:
    """Dry-run transport: writes the message to the log instead of sending it."""

    async def send(self, owner: int, text: str) -> bool:
        logger.info("[dry-run] alert for %s:\n%s", owner, text)
        return True
