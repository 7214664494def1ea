"""
Runtime Settings

Centralized configuration for the booking and results engines.
All values are loaded from environment variables (a local .env file is
honoured) and exposed as class attributes.
"""
import os
from datetime import time

from dotenv import load_dotenv

load_dotenv()


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


def get_int_env(key: str, default: int) -> int:
    """Get an integer value from environment variable."""
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return int(value)


def get_float_env(key: str, default: float) -> float:
    """Get a float value from environment variable."""
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return float(value)


def get_time_env(key: str, default: str) -> time:
    """Get an HH:MM time of day from environment variable."""
    return time.fromisoformat(os.getenv(key, default))


class Settings:
    """
    Engine settings.

    To add a new setting:
    1. Add it here as a class attribute
    2. Load it from an environment variable with a sane default
    3. Read it through `settings` at call time, not import time
    """

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./paddock.db")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    SQL_ECHO: bool = get_bool_env("SQL_ECHO", False)

    # Scrutineering booking
    COMPETITION_TIMEZONE: str = os.getenv("COMPETITION_TIMEZONE", "Europe/Athens")
    BOOKING_WINDOW_START: time = get_time_env("BOOKING_WINDOW_START", "08:00")
    BOOKING_WINDOW_END: time = get_time_env("BOOKING_WINDOW_END", "18:00")
    BOOKING_MAX_ATTEMPTS: int = get_int_env("BOOKING_MAX_ATTEMPTS", 3)

    # Persistence
    PERSISTENCE_MAX_ATTEMPTS: int = get_int_env("PERSISTENCE_MAX_ATTEMPTS", 3)
    PERSISTENCE_RETRY_DELAY_SECONDS: float = get_float_env("PERSISTENCE_RETRY_DELAY_SECONDS", 0.2)

    # Penalty and results batch jobs
    BATCH_ITEM_TIMEOUT_SECONDS: float = get_float_env("BATCH_ITEM_TIMEOUT_SECONDS", 10.0)

    # Live booking board
    BOARD_REFRESH_INTERVAL_SECONDS: float = get_float_env("BOARD_REFRESH_INTERVAL_SECONDS", 30.0)


settings = Settings()
