"""
Tests for feed_broker.config
"""
import pytest

from feed_broker.config import BrokerConfig, ConfigurationError, load_settings
from feed_broker.registry import OverflowPolicy

ENV_VARS = (
    "FEED_BROKER_MAX_QUEUE",
    "FEED_BROKER_OVERFLOW",
    "FEED_BROKER_IDLE_TIMEOUT_S",
    "FEED_BROKER_REAP_INTERVAL_S",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = load_settings()
    assert settings == BrokerConfig()
    assert settings.max_queue_size == 10_000
    assert settings.overflow_policy is OverflowPolicy.DROP_OLDEST
    assert settings.idle_timeout_s == 600.0
    assert settings.reap_interval_s == 60.0


def test_values_from_environment(monkeypatch):
    monkeypatch.setenv("FEED_BROKER_MAX_QUEUE", "0")
    monkeypatch.setenv("FEED_BROKER_OVERFLOW", "REJECT")
    monkeypatch.setenv("FEED_BROKER_IDLE_TIMEOUT_S", "0.5")
    monkeypatch.setenv("FEED_BROKER_REAP_INTERVAL_S", "2")

    settings = load_settings()

    assert settings.max_queue_size == 0
    assert settings.overflow_policy is OverflowPolicy.REJECT
    assert settings.idle_timeout_s == 0.5
    assert settings.reap_interval_s == 2.0


@pytest.mark.parametrize(
    "name, value",
    [
        ("FEED_BROKER_MAX_QUEUE", "many"),
        ("FEED_BROKER_MAX_QUEUE", "-1"),
        ("FEED_BROKER_OVERFLOW", "drop_newest"),
        ("FEED_BROKER_IDLE_TIMEOUT_S", "soon"),
        ("FEED_BROKER_REAP_INTERVAL_S", "0"),
    ],
)
def test_invalid_values_raise(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigurationError):
        load_settings()
