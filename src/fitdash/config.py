"""
Runtime configuration, read from the environment once at import time.
"""

import os
from zoneinfo import ZoneInfo


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name, '')
    try:
        return int(value) if value.strip() else default
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    value = os.environ.get(name, '')
    try:
        return float(value) if value.strip() else default
    except ValueError:
        return default


# Fitbit app / auth
CLIENT_ID = os.environ.get('CLIENT_ID', '')
REDIRECT_URL = os.environ.get('REDIRECT_URL', 'http://localhost:5033/')
FITBIT_ACCESS_TOKEN = os.environ.get('FITBIT_ACCESS_TOKEN', '')
AUTH_SCOPES = ['activity', 'heartrate', 'sleep', 'profile']
TOKEN_EXPIRES_IN = 604800  # 7 days, the longest implicit-grant lifetime Fitbit allows

# Upstream
FITBIT_API_BASE = os.environ.get('FITBIT_API_BASE', 'https://api.fitbit.com').rstrip('/')
FITBIT_PROXY_URL = os.environ.get('FITBIT_PROXY_URL', '')
REQUEST_TIMEOUT = _float_env('REQUEST_TIMEOUT', 15)

# Loading engine
TIMEZONE_NAME = os.environ.get('FITDASH_TIMEZONE', 'UTC')
LOADING_TIMEOUT = _float_env('LOADING_TIMEOUT', 120)
FETCH_WORKERS = _int_env('FETCH_WORKERS', 8)
RETENTION_DAYS = _int_env('RETENTION_DAYS', 0)
DEFAULT_WINDOW_HOURS = _int_env('DEFAULT_WINDOW_HOURS', 24)

# Logging / server
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
LOG_DIR = os.environ.get('LOG_DIR', 'logs')
PORT = _int_env('PORT', 5033)


def get_timezone(name: str = None) -> ZoneInfo:
    """Viewer timezone; falls back to UTC for an unknown name."""
    try:
        return ZoneInfo(name or TIMEZONE_NAME)
    except (KeyError, ValueError):
        return ZoneInfo('UTC')
