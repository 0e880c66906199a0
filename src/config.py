"""
Configuration module for the reconciliation runtime.

Loads configuration from environment variables. The hosting process owns
the values; the runtime reads them when building long-lived components such
as the dependency tracker, the event recorder and the Postgres store.
"""

import os
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class DatabaseConfig:
    """PostgreSQL store configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "reconciler"
    user: str = "reconciler"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "reconciler"),
            user=os.getenv("DB_USER", "reconciler"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class TrackerConfig:
    """Dependency tracker configuration."""

    resync_interval: int = 600  # scheduler resync period in seconds
    ttl: Optional[int] = None  # defaults to 2x resync_interval
    sweep_interval: int = 60
    shards: int = 32

    def __post_init__(self):
        if self.ttl is None:
            self.ttl = 2 * self.resync_interval

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        ttl = os.getenv("TRACKER_TTL")
        return cls(
            resync_interval=int(os.getenv("RESYNC_INTERVAL", "600")),
            ttl=int(ttl) if ttl else None,
            sweep_interval=int(os.getenv("TRACKER_SWEEP_INTERVAL", "60")),
            shards=int(os.getenv("TRACKER_SHARDS", "32")),
        )


@dataclass
class ControllerConfig:
    """Parent controller and event recording configuration."""

    name: str = "reconciler"
    event_history_size: int = 256
    event_queue_size: int = 256

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            name=os.getenv("CONTROLLER_NAME", "reconciler"),
            event_history_size=int(os.getenv("EVENT_HISTORY_SIZE", "256")),
            event_queue_size=int(os.getenv("EVENT_QUEUE_SIZE", "256")),
        )


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    tracker: TrackerConfig
    controller: ControllerConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            tracker=TrackerConfig.from_env(),
            controller=ControllerConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            tracker=TrackerConfig(),
            controller=ControllerConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
