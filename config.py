#!/usr/bin/env python3
import os
import argparse
from typing import NamedTuple

from cryptography.fernet import Fernet

import constants

class AppConfig(NamedTuple):
    """Typed configuration object."""
    telegram_bot_token: str | None
    credentials_key: str
    db_path: str
    api_base_url: str
    poll_interval: float
    margin_interval: float
    alert_cooldown: int
    history_hours: int
    max_concurrent_fetches: int
    http_timeout: float
    log_level: str
    dry_run: bool


def _positive(parser: argparse.ArgumentParser, name: str, value: float) -> None:
    if value <= 0:
        parser.error(f'{name} must be greater than zero.')


def load_config() -> AppConfig:
    """
    Parses command-line arguments and loads environment variables to create a configuration object.
    """
    parser = argparse.ArgumentParser(
        description="Watch the LN Markets feed and notify Telegram users when their alerts trigger.",
        epilog="Example: ./main.py --poll-interval 5 --alert-cooldown 300"
    )
    parser.add_argument('--poll-interval', type=float, default=constants.DEFAULT_POLL_INTERVAL, help='Seconds between market feed polls (default: 5).')
    parser.add_argument('--margin-interval', type=float, default=constants.DEFAULT_MARGIN_INTERVAL, help='Seconds between margin/liquidation checks (default: 30).')
    parser.add_argument('--alert-cooldown', type=int, default=constants.DEFAULT_ALERT_COOLDOWN, help='Seconds before a repeating alert may fire again (default: 300).')
    parser.add_argument('--history-hours', type=int, default=constants.DEFAULT_HISTORY_HOURS, help='Hours of price history kept in memory (default: 24).')
    parser.add_argument('--max-concurrent-fetches', type=int, default=constants.DEFAULT_MAX_CONCURRENT_FETCHES, help='Maximum parallel position fetches per margin cycle (default: 5).')
    parser.add_argument('--http-timeout', type=float, default=constants.DEFAULT_HTTP_TIMEOUT, help='Timeout in seconds for LN Markets API calls (default: 10).')
    parser.add_argument('--db-path', type=str, help=f'SQLite database path (default: ${constants.DATABASE_PATH_ENV_VAR} or {constants.DEFAULT_DB_PATH}).')
    parser.add_argument('--log-level', default='INFO', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Logging level (default: INFO).')
    parser.add_argument('--dry-run', action='store_true', help='Run the feed and alert engine without Telegram; alerts are logged instead of sent.')

    args = parser.parse_args()

    _positive(parser, '--poll-interval', args.poll_interval)
    _positive(parser, '--margin-interval', args.margin_interval)
    _positive(parser, '--history-hours', args.history_hours)
    _positive(parser, '--max-concurrent-fetches', args.max_concurrent_fetches)
    _positive(parser, '--http-timeout', args.http_timeout)
    if args.alert_cooldown < 0:
        parser.error('--alert-cooldown cannot be negative.')

    # Load from environment
    telegram_bot_token = os.environ.get(constants.TELEGRAM_BOT_TOKEN_ENV_VAR)
    db_path = args.db_path or os.environ.get(constants.DATABASE_PATH_ENV_VAR) or constants.DEFAULT_DB_PATH
    api_base_url = os.environ.get(constants.LNMARKETS_API_BASE_URL_ENV_VAR) or constants.LNMARKETS_API_BASE_URL

    if not args.dry_run and not telegram_bot_token:
        print(f"{constants.TELEGRAM_BOT_TOKEN_ENV_VAR} environment variable not set. Create a bot with @BotFather or use --dry-run.")
        exit(1)

    credentials_key = os.environ.get(constants.CREDENTIALS_KEY_ENV_VAR)
    if not credentials_key:
        print(f"{constants.CREDENTIALS_KEY_ENV_VAR} environment variable not set. Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\"")
        exit(1)
    try:
        Fernet(credentials_key)
    except ValueError:
        print(f"{constants.CREDENTIALS_KEY_ENV_VAR} is not a valid Fernet key (32 url-safe base64-encoded bytes).")
        exit(1)

    return AppConfig(
        telegram_bot_token=telegram_bot_token,
        credentials_key=credentials_key,
        db_path=db_path,
        api_base_url=api_base_url.rstrip('/'),
        poll_interval=args.poll_interval,
        margin_interval=args.margin_interval,
        alert_cooldown=args.alert_cooldown,
        history_hours=args.history_hours,
        max_concurrent_fetches=args.max_concurrent_fetches,
        http_timeout=args.http_timeout,
        log_level=args.log_level,
        dry_run=args.dry_run,
    )
