"""
Feed Broker

Process-owned pub/sub core. One FeedBroker is created at service start and
closed at shutdown; every subscribe, publish and poll goes through it.

    broker = FeedBroker()
    sub_all = broker.subscribe("A")
    sub_big = broker.subscribe("A", filter={"count": {"gt": 3}}, projection={"count": 1})

    for i in range(6):
        broker.publish("A", {"body": "hello", "count": i})

    result = broker.poll([sub_all, sub_big])
    result.messages[sub_big]["A"]   # [{"count": 4}, {"count": 5}]

Context manager usage:
    with FeedBroker.from_settings(load_settings()) as broker:
        ...
"""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .config import BrokerConfig
from .errors import BrokerClosedError
from .filters import compile_filter
from .poller import FeedPoller, PollResult
from .projection import compile_projection
from .publisher import FeedPublisher, validate_channel
from .registry import Clock, OverflowPolicy, Subscription, SubscriptionRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BrokerStats:
    """Point-in-time broker counters."""
    channels: int
    subscriptions: int
    published: int
    delivered: int
    dropped: int
    pending: int


class FeedBroker:
    """
    Subscribe / unsubscribe / publish / poll over in-memory channels.

    Args:
        max_queue_size:  Per-subscription capacity; 0 means unbounded.
        overflow_policy: What to do when a subscription queue is full.
        idle_timeout:    Seconds without a poll after which reap_idle()
                         closes a subscription. None or 0 disables reaping.
        clock:           Monotonic time source.
        id_factory:      Override subscription id generation (tests).
    """

    def __init__(
        self,
        max_queue_size: int = 0,
        overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST,
        idle_timeout: Optional[float] = None,
        clock: Clock = time.monotonic,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self._registry = SubscriptionRegistry(
            max_queue_size=max_queue_size,
            overflow_policy=overflow_policy,
            clock=clock,
            id_factory=id_factory,
        )
        self._publisher = FeedPublisher(self._registry)
        self._poller = FeedPoller(self._registry)
        self._idle_timeout = idle_timeout or None
        self._lock = threading.Lock()
        self._closed = False
        self._retired_dropped = 0

    @classmethod
    def from_settings(cls, config: BrokerConfig, **kwargs: Any) -> FeedBroker:
        """Build a broker from a BrokerConfig."""
        return cls(
            max_queue_size=config.max_queue_size,
            overflow_policy=config.overflow_policy,
            idle_timeout=config.idle_timeout_s,
            **kwargs,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def idle_timeout(self) -> float | None:
        return self._idle_timeout

    def close(self) -> None:
        """Close every subscription and refuse further operations."""
        with self._lock:
            if self._closed:
                return
            self._closed = True

        closed = 0
        for subscription in self._registry.close():
            if self._retire(subscription.id) is not None:
                closed += 1
        logger.info("FeedBroker closed, %d subscription(s) discarded", closed)

    def __enter__(self) -> FeedBroker:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _check_open(self) -> None:
        if self._closed:
            raise BrokerClosedError("FeedBroker is closed")

    # ── Subscriptions ─────────────────────────────────────────────────────────

    def subscribe(
        self,
        channel: str,
        filter: Optional[Mapping[str, Any]] = None,
        projection: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """
        Register interest in a channel.

        The filter and projection are validated here, so a subscription
        that exists can always be published to.

        Returns:
            The new subscription id.

        Raises:
            ValidationError: If channel is not a non-empty string.
            FilterError: If the filter is malformed.
            ProjectionError: If the projection is malformed.
            BrokerClosedError: If the broker has been closed.
        """
        self._check_open()
        validate_channel(channel)
        predicate = compile_filter(filter)
        compiled_projection = compile_projection(projection)

        subscription = self._registry.register(channel, predicate, compiled_projection)
        logger.info(
            "Subscription %s created on '%s' (filter=%s, projection=%s)",
            subscription.id,
            channel,
            predicate is not None,
            compiled_projection.fields if compiled_projection else None,
        )
        return subscription.id

    def unsubscribe(self, subscription_id: str) -> bool:
        """
        Close a subscription, discarding anything still queued.

        Returns:
            True if it was live, False if the id is unknown or already closed.
        """
        self._check_open()
        subscription = self._retire(subscription_id)
        if subscription is None:
            logger.debug("Unsubscribe for unknown subscription %s", subscription_id)
            return False
        logger.info("Subscription %s on '%s' closed", subscription_id, subscription.channel)
        return True

    def _retire(
        self,
        subscription_id: str,
        idle_cutoff: Optional[float] = None,
    ) -> Subscription | None:
        subscription = self._registry.remove(subscription_id, idle_cutoff=idle_cutoff)
        if subscription is not None:
            with self._lock:
                self._retired_dropped += subscription.dropped
        return subscription

    def subscription(self, subscription_id: str) -> Subscription | None:
        """Look up a live subscription by id."""
        return self._registry.get(subscription_id)

    # ── Publish / poll ────────────────────────────────────────────────────────

    def publish(self, channel: str, message: Mapping[str, Any]) -> int:
        """Publish message to channel. Returns the number of queues it reached."""
        self._check_open()
        return self._publisher.publish(channel, message)

    def publish_many(self, channels: list[str], message: Mapping[str, Any]) -> int:
        """Publish message to every channel in channels. Returns total deliveries."""
        self._check_open()
        return self._publisher.publish_many(channels, message)

    def poll(self, subscription_ids: Iterable[str] | str) -> PollResult:
        """Drain the named subscriptions. A single id may be passed as a plain string."""
        self._check_open()
        if isinstance(subscription_ids, str):
            subscription_ids = [subscription_ids]
        return self._poller.poll(subscription_ids)

    # ── Maintenance ───────────────────────────────────────────────────────────

    def reap_idle(self, now: Optional[float] = None) -> list[str]:
        """
        Close subscriptions that have not been polled within idle_timeout.

        Returns:
            Ids of the subscriptions that were closed.
        """
        if self._idle_timeout is None or self._closed:
            return []

        now = self._registry.clock() if now is None else now
        cutoff = now - self._idle_timeout
        reaped: list[str] = []
        for subscription in self._registry.subscriptions():
            if subscription.last_polled_at > cutoff:
                continue
            # A poll may land after this check; _retire re-checks under the queue lock.
            if self._retire(subscription.id, idle_cutoff=cutoff) is not None:
                reaped.append(subscription.id)

        if reaped:
            logger.info(
                "Reaped %d idle subscription(s) (idle_timeout=%ss)",
                len(reaped),
                self._idle_timeout,
            )
        return reaped

    @property
    def stats(self) -> BrokerStats:
        live = self._registry.subscriptions()
        with self._lock:
            retired_dropped = self._retired_dropped
        return BrokerStats(
            channels=self._registry.channel_count,
            subscriptions=len(live),
            published=self._publisher.published,
            delivered=self._publisher.delivered,
            dropped=retired_dropped + sum(s.dropped for s in live),
            pending=sum(s.pending for s in live),
        )
