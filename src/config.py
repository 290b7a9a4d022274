"""Application configuration settings.

This module provides centralized configuration management using environment
variables with sensible defaults.
"""

import os
from dataclasses import dataclass


def _get_bool_env(name: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable.

    Args:
        name: Environment variable name.
        default: Default value if not set.

    Returns:
        Boolean value from environment.
    """
    value = os.getenv(name, "").lower()
    if value in ("true", "1", "yes", "on"):
        return True
    if value in ("false", "0", "no", "off"):
        return False
    return default


def _get_int_env(name: str, default: int) -> int:
    """Get an integer value from environment variable, falling back on bad input."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    """Get a float value from environment variable, falling back on bad input."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass
class Settings:
    """Application settings loaded from environment variables.

    Attributes:
        WEBHOOK_BATCH_SIZE: Deliveries released per scheduler pass.
        WEBHOOK_TICK_INTERVAL: Seconds between scheduler ticks.
        WEBHOOK_REQUEST_TIMEOUT: Outbound HTTP timeout in seconds.
        WEBHOOK_USER_AGENT: User-Agent sent with every delivery.
        WEBHOOK_QUEUE_MAX_SIZE: Maximum number of queued deliveries.
        WEBHOOK_DEFAULT_MAX_RETRIES: Retry policy default for new webhooks.
        WEBHOOK_DEFAULT_BACKOFF_MULTIPLIER: Retry policy default for new webhooks.
        WEBHOOK_DEFAULT_INITIAL_DELAY_MS: Retry policy default for new webhooks.
        WEBHOOK_SECRET_BYTES: Random bytes in a generated signing secret.
        WEBHOOK_DB_PATH: SQLite database path (None keeps everything in memory).
        WEBHOOK_RECOVER_ON_START: Re-enqueue stranded pending deliveries on start.
        WEBHOOK_RECOVERY_MIN_AGE: Seconds a delivery must be pending to be recovered.
        WEBHOOK_BLOCK_PRIVATE_TARGETS: Reject loopback and private network targets.
        LOG_LEVEL: Logging level.
        LOG_FORMAT: Log output format ("json" or "text").
    """

    # Scheduler
    WEBHOOK_BATCH_SIZE: int = 10
    WEBHOOK_TICK_INTERVAL: float = 1.0
    WEBHOOK_QUEUE_MAX_SIZE: int = 10000

    # Delivery
    WEBHOOK_REQUEST_TIMEOUT: float = 30.0
    WEBHOOK_USER_AGENT: str = "WebhookRelay/1.0"

    # Retry policy defaults
    WEBHOOK_DEFAULT_MAX_RETRIES: int = 3
    WEBHOOK_DEFAULT_BACKOFF_MULTIPLIER: float = 2.0
    WEBHOOK_DEFAULT_INITIAL_DELAY_MS: int = 1000

    # Security
    WEBHOOK_SECRET_BYTES: int = 32
    WEBHOOK_BLOCK_PRIVATE_TARGETS: bool = False

    # Persistence
    WEBHOOK_DB_PATH: str | None = None
    WEBHOOK_RECOVER_ON_START: bool = True
    WEBHOOK_RECOVERY_MIN_AGE: float = 60.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables.

        Returns:
            Settings instance populated from environment.
        """
        return cls(
            WEBHOOK_BATCH_SIZE=_get_int_env("WEBHOOK_BATCH_SIZE", 10),
            WEBHOOK_TICK_INTERVAL=_get_float_env("WEBHOOK_TICK_INTERVAL", 1.0),
            WEBHOOK_QUEUE_MAX_SIZE=_get_int_env("WEBHOOK_QUEUE_MAX_SIZE", 10000),
            WEBHOOK_REQUEST_TIMEOUT=_get_float_env("WEBHOOK_REQUEST_TIMEOUT", 30.0),
            WEBHOOK_USER_AGENT=os.getenv("WEBHOOK_USER_AGENT", "WebhookRelay/1.0"),
            WEBHOOK_DEFAULT_MAX_RETRIES=_get_int_env("WEBHOOK_DEFAULT_MAX_RETRIES", 3),
            WEBHOOK_DEFAULT_BACKOFF_MULTIPLIER=_get_float_env(
                "WEBHOOK_DEFAULT_BACKOFF_MULTIPLIER", 2.0
            ),
            WEBHOOK_DEFAULT_INITIAL_DELAY_MS=_get_int_env(
                "WEBHOOK_DEFAULT_INITIAL_DELAY_MS", 1000
            ),
            WEBHOOK_SECRET_BYTES=_get_int_env("WEBHOOK_SECRET_BYTES", 32),
            WEBHOOK_BLOCK_PRIVATE_TARGETS=_get_bool_env(
                "WEBHOOK_BLOCK_PRIVATE_TARGETS", default=False
            ),
            WEBHOOK_DB_PATH=os.getenv("WEBHOOK_DB_PATH") or None,
            WEBHOOK_RECOVER_ON_START=_get_bool_env("WEBHOOK_RECOVER_ON_START", default=True),
            WEBHOOK_RECOVERY_MIN_AGE=_get_float_env("WEBHOOK_RECOVERY_MIN_AGE", 60.0),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
            LOG_FORMAT=os.getenv("LOG_FORMAT", "json"),
        )


# Global settings instance
settings = Settings.from_env()
