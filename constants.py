#!/usr/bin/env python3

# --- API Configuration ---
LNMARKETS_API_BASE_URL = 'https://api.lnmarkets.com'
TICKER_PATH = '/v2/futures/ticker'
MARKET_PATH = '/v2/futures/market'
USER_PATH = '/v2/user'
RUNNING_POSITIONS_PATH = '/v2/futures?type=running'
CROSS_POSITION_PATH = '/v2/futures/cross/position'

# --- Environment Variable Names ---
TELEGRAM_BOT_TOKEN_ENV_VAR = 'TELEGRAM_BOT_TOKEN'
DATABASE_PATH_ENV_VAR = 'DATABASE_PATH'
LNMARKETS_API_BASE_URL_ENV_VAR = 'LNMARKETS_API_BASE_URL'
# Fernet key used to encrypt stored LN Markets API credentials.
CREDENTIALS_KEY_ENV_VAR = 'CREDENTIALS_ENCRYPTION_KEY'

# --- Scheduling Defaults (seconds) ---
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_MARGIN_INTERVAL = 30.0
DEFAULT_ALERT_COOLDOWN = 300
DEFAULT_HTTP_TIMEOUT = 10.0

# --- Feed Retention ---
DEFAULT_HISTORY_HOURS = 24
# One long-term sample per minute at the default 5s poll interval.
HISTORY_PERSIST_EVERY = 12

# --- Alert Defaults ---
DEFAULT_TIME_WINDOW_MINUTES = 60
MAX_TIME_WINDOW_MINUTES = 24 * 60
DEFAULT_MAX_CONCURRENT_FETCHES = 5

DEFAULT_DB_PATH = 'data/alerts.db'

SATS_PER_BTC = 100_000_000
