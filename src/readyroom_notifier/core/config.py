"""
Runtime configuration for the notifier daemon.

Values come from the environment (a ``.env`` file is loaded first), the same
way every service in this project is configured.
"""
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from readyroom_notifier.core.errors import ConfigurationError

load_dotenv()

DEFAULT_TIMEZONE = "America/New_York"

# Advisory locks held at once by one tick: two per publication row, one per reminder row.
# Each pins a pooled connection, and queries under a lock need one more.
HELD_LOCKS_PER_TICK = 3
DEFAULT_POOL_MAX_SIZE = HELD_LOCKS_PER_TICK + 3

def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")

def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")

class TelegramConfig(BaseModel):
    """Credentials for the telethon-backed messaging client."""
    api_id: int
    api_hash: str
    bot_token: Optional[str] = None
    session: str = "readyroom_notifier"

class NotifierConfig(BaseModel):
    """Configuration for the processor orchestrator and countdown updater."""
    database_url: str
    tick_interval_seconds: int = 60  # How often every processor runs
    instance_id: str = Field(default_factory=lambda: f"pid-{os.getpid()}")
    default_timezone: str = DEFAULT_TIMEZONE
    countdown_enabled: bool = True
    db_pool_min_size: int = 1
    db_pool_max_size: int = DEFAULT_POOL_MAX_SIZE
    db_acquire_timeout_seconds: int = 30
    log_level: str = "INFO"
    telegram: Optional[TelegramConfig] = None

    @classmethod
    def from_env(cls) -> "NotifierConfig":
        """
        Build configuration from environment variables.

        Returns:
            NotifierConfig populated from the environment.

        Raises:
            ConfigurationError: If DATABASE_URL is missing or a numeric
                variable does not parse.
        """
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ConfigurationError("DATABASE_URL environment variable is not set")

        telegram = None
        api_id = os.getenv("TELEGRAM_API_ID")
        api_hash = os.getenv("TELEGRAM_API_HASH")
        if api_id and api_hash:
            telegram = TelegramConfig(
                api_id=_env_int("TELEGRAM_API_ID", 0),
                api_hash=api_hash,
                bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or None,
                session=os.getenv("TELEGRAM_SESSION", "readyroom_notifier"),
            )

        tick = _env_int("TICK_INTERVAL_SECONDS", 60)
        if tick <= 0:
            raise ConfigurationError("TICK_INTERVAL_SECONDS must be positive")

        pool_max = _env_int("DB_POOL_MAX_SIZE", DEFAULT_POOL_MAX_SIZE)
        if pool_max <= HELD_LOCKS_PER_TICK:
            raise ConfigurationError(
                f"DB_POOL_MAX_SIZE must exceed {HELD_LOCKS_PER_TICK} so locked rows can still query, got {pool_max}"
            )

        config = cls(
            database_url=database_url,
            tick_interval_seconds=tick,
            default_timezone=os.getenv("DEFAULT_TIMEZONE", DEFAULT_TIMEZONE),
            countdown_enabled=_env_bool("COUNTDOWN_ENABLED", True),
            db_pool_min_size=_env_int("DB_POOL_MIN_SIZE", 1),
            db_pool_max_size=pool_max,
            db_acquire_timeout_seconds=_env_int("DB_ACQUIRE_TIMEOUT_SECONDS", 30),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            telegram=telegram,
        )
        instance_id = os.getenv("INSTANCE_ID")
        if instance_id:
            config.instance_id = instance_id
        return config
