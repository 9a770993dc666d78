"""
Feed Broker Configuration

All environment variables the broker understands are read here and nowhere
else. Entry points load a .env file (python-dotenv) before calling
load_settings().

    FEED_BROKER_MAX_QUEUE         per-subscription capacity, 0 = unbounded
    FEED_BROKER_OVERFLOW          drop_oldest | reject
    FEED_BROKER_IDLE_TIMEOUT_S    reap subscriptions not polled for this long, 0 = never
    FEED_BROKER_REAP_INTERVAL_S   how often the reaper runs
"""
from __future__ import annotations

import os
from dataclasses import dataclass

from .registry import OverflowPolicy


class ConfigurationError(Exception):
    """Raised when configuration is missing or invalid."""
    pass


def _optional_env(name: str, default: str = "") -> str:
    """Get an optional environment variable with a default."""
    return os.environ.get(name, default)


def _optional_env_int(name: str, default: int) -> int:
    """Get an optional integer environment variable with a default."""
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"Invalid integer value for {name}: {value}")


def _optional_env_float(name: str, default: float) -> float:
    """Get an optional float environment variable with a default."""
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"Invalid number for {name}: {value}")


@dataclass(frozen=True)
class BrokerConfig:
    """Queue bounds and idle-subscription cleanup."""
    max_queue_size: int = 10_000
    overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST
    idle_timeout_s: float = 600.0
    reap_interval_s: float = 60.0

    def __post_init__(self) -> None:
        if self.max_queue_size < 0:
            raise ConfigurationError(f"max_queue_size must be >= 0, got {self.max_queue_size}")
        if self.idle_timeout_s < 0:
            raise ConfigurationError(f"idle_timeout_s must be >= 0, got {self.idle_timeout_s}")
        if self.reap_interval_s <= 0:
            raise ConfigurationError(f"reap_interval_s must be > 0, got {self.reap_interval_s}")


def load_settings() -> BrokerConfig:
    """Load broker settings from environment variables."""
    policy_name = _optional_env("FEED_BROKER_OVERFLOW", OverflowPolicy.DROP_OLDEST.value)
    try:
        policy = OverflowPolicy(policy_name.lower())
    except ValueError:
        raise ConfigurationError(
            f"Invalid value for FEED_BROKER_OVERFLOW: {policy_name} "
            f"(expected one of: {', '.join(p.value for p in OverflowPolicy)})"
        )

    return BrokerConfig(
        max_queue_size=_optional_env_int("FEED_BROKER_MAX_QUEUE", 10_000),
        overflow_policy=policy,
        idle_timeout_s=_optional_env_float("FEED_BROKER_IDLE_TIMEOUT_S", 600.0),
        reap_interval_s=_optional_env_float("FEED_BROKER_REAP_INTERVAL_S", 60.0),
    )
