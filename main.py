#!/usr/bin/env python3
import asyncio
import functools
import logging
import signal
import time
from datetime import timedelta

import aiohttp
from telegram import BotCommand
from telegram.ext import Application, CommandHandler
from telegram.error import TimedOut, TelegramError

from config import AppConfig, load_config
from bot.handlers import (
    alerts_command,
    cancel_command,
    change_command,
    connect_command,
    disconnect_command,
    funding_command,
    help_command,
    info_command,
    liquidation_command,
    margin_command,
    price_command,
    status_command,
    ticker_command,
)
from alert_engine import AlertEngine
from services.lnmarkets_client import MarketClient, PositionClient
from services.market_feed import MarketFeed
from services.notifier import LoggingNotifier, Notifier, TelegramNotifier
from storage import SQLiteRepository

logger = logging.getLogger("lnm_alerts")

# Upper bound on waiting for the first ticker before handing control to the bot.
FEED_READY_TIMEOUT = 30.0


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    # httpx logs every Telegram long-poll request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_services(
    config: AppConfig,
    session: aiohttp.ClientSession,
    repository: SQLiteRepository,
    notifier: Notifier,
) -> tuple[MarketFeed, AlertEngine, functools.partial]:
    """Wires the feed and the engine around one shared HTTP session."""
    market_client = MarketClient(session, config.api_base_url, timeout=config.http_timeout)
    position_client_factory = functools.partial(
        PositionClient,
        session,
        base_url=config.api_base_url,
        timeout=config.http_timeout,
    )
    market_feed = MarketFeed(
        market_client,
        poll_interval=config.poll_interval,
        retention=timedelta(hours=config.history_hours),
        history_store=repository,
    )
    alert_engine = AlertEngine(
        repository,
        market_feed,
        notifier,
        position_client_factory=position_client_factory,
        cooldown=timedelta(seconds=config.alert_cooldown),
        margin_interval=config.margin_interval,
        max_concurrent_fetches=config.max_concurrent_fetches,
        fetch_timeout=config.http_timeout,
    )
    return market_feed, alert_engine, position_client_factory


async def start_services(market_feed: MarketFeed, alert_engine: AlertEngine) -> None:
    alert_engine.attach()
    market_feed.start()
    if await market_feed.wait_until_ready(FEED_READY_TIMEOUT):
        logger.info("📊 Price feed ready: $%s", f"{market_feed.current_price:,.0f}")
    else:
        logger.warning("No price received within %.0fs; continuing, the feed keeps polling.", FEED_READY_TIMEOUT)
    alert_engine.start()


async def post_init_hook(application: Application) -> None:
    """A hook that runs after the bot is initialized to set up shared clients and tasks."""
    session = aiohttp.ClientSession(headers={'User-Agent': 'LNMarketsAlertBot/1.0'})
    application.bot_data['http_session'] = session

    config: AppConfig = application.bot_data['config']
    repository: SQLiteRepository = application.bot_data['repository']
    market_feed, alert_engine, position_client_factory = build_services(
        config, session, repository, TelegramNotifier(application.bot)
    )
    application.bot_data['market_feed'] = market_feed
    application.bot_data['alert_engine'] = alert_engine
    application.bot_data['position_client_factory'] = position_client_factory

    commands = [
        BotCommand("price", "Alert when BTC hits a price"),
        BotCommand("funding", "Alert on the funding rate"),
        BotCommand("change", "Alert on a % move within a window"),
        BotCommand("ticker", "Current price & funding"),
        BotCommand("alerts", "View your alerts"),
        BotCommand("cancel", "Cancel an alert"),
        BotCommand("connect", "Link your LN Markets account"),
        BotCommand("status", "View your positions"),
        BotCommand("margin", "Alert on low margin"),
        BotCommand("liquidation", "Alert when liquidation is near"),
        BotCommand("help", "Show help message"),
    ]
    try:
        await application.bot.set_my_commands(commands)
    except (TimedOut, TelegramError) as exc:
        logger.warning("Unable to set Telegram bot commands (%s). Continuing startup.", exc)

    await start_services(market_feed, alert_engine)


async def post_shutdown_hook(application: Application) -> None:
    """A hook that runs on application shutdown to clean up resources."""
    alert_engine = application.bot_data.get('alert_engine')
    if alert_engine:
        await alert_engine.stop()
    market_feed = application.bot_data.get('market_feed')
    if market_feed:
        await market_feed.stop()
    session = application.bot_data.get('http_session')
    if session:
        await session.close()
    repository = application.bot_data.get('repository')
    if repository:
        await repository.close()


async def run_dry(config: AppConfig, repository: SQLiteRepository) -> None:
    """Runs the feed and the engine without Telegram until interrupted."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    async with aiohttp.ClientSession(headers={'User-Agent': 'LNMarketsAlertBot/1.0'}) as session:
        market_feed, alert_engine, _ = build_services(config, session, repository, LoggingNotifier())
        await start_services(market_feed, alert_engine)
        try:
            await stop_event.wait()
        finally:
            logger.info("🛑 Shutting down...")
            await alert_engine.stop()
            await market_feed.stop()
            await repository.close()


def main() -> None:
    """The main synchronous entry point for the application."""
    config = load_config()
    configure_logging(config.log_level)
    logger.info("🚀 Starting LN Markets Alert Bot...")

    # A store that cannot be opened is fatal.
    repository = SQLiteRepository(config.db_path, config.credentials_key)

    if config.dry_run:
        asyncio.run(run_dry(config, repository))
        return

    application = (
        Application.builder()
        .token(config.telegram_bot_token)
        .post_init(post_init_hook)
        .post_shutdown(post_shutdown_hook)
        .build()
    )

    application.bot_data['config'] = config
    application.bot_data['start_time'] = time.time()
    application.bot_data['repository'] = repository

    # Register command handlers
    application.add_handler(CommandHandler("start", help_command))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("ticker", ticker_command))
    application.add_handler(CommandHandler("price", price_command))
    application.add_handler(CommandHandler("funding", funding_command))
    application.add_handler(CommandHandler("change", change_command))
    application.add_handler(CommandHandler("alerts", alerts_command))
    application.add_handler(CommandHandler("cancel", cancel_command))
    application.add_handler(CommandHandler("connect", connect_command))
    application.add_handler(CommandHandler("disconnect", disconnect_command))
    application.add_handler(CommandHandler("status", status_command))
    application.add_handler(CommandHandler("margin", margin_command))
    application.add_handler(CommandHandler("liquidation", liquidation_command))
    application.add_handler(CommandHandler("info", info_command))

    application.run_polling()


if __name__ == "__main__":
    main()
