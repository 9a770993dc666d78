"""
feed_broker: In-process pub/sub core with filtered, projected, polled feeds.

Public API:
    FeedBroker: subscribe / unsubscribe / publish / poll
    PollResult: documents drained by one poll, grouped by id and channel
    CommandHandler: dict / JSON command surface over a FeedBroker
    run_reaper: asyncio loop closing subscriptions nobody polls
    compile_filter: validate a filter mapping into a predicate
    matches: evaluate a predicate against a document
    compile_projection / project: field-inclusion projections
    BrokerConfig / load_settings: environment configuration
"""
from .broker import BrokerStats, FeedBroker
from .commands import CommandHandler
from .config import BrokerConfig, ConfigurationError, load_settings
from .errors import (
    BrokerClosedError,
    FeedBrokerError,
    FilterError,
    InvariantError,
    ProjectionError,
    ValidationError,
)
from .filters import compile_filter, matches
from .poller import PollResult
from .projection import compile_projection, project
from .reaper import run_reaper
from .registry import OverflowPolicy
from .serializer import SerializationError

__all__ = [
    "FeedBroker",
    "BrokerStats",
    "PollResult",
    "CommandHandler",
    "run_reaper",
    "compile_filter",
    "matches",
    "compile_projection",
    "project",
    "OverflowPolicy",
    "BrokerConfig",
    "ConfigurationError",
    "load_settings",
    "FeedBrokerError",
    "ValidationError",
    "FilterError",
    "ProjectionError",
    "BrokerClosedError",
    "InvariantError",
    "SerializationError",
]
