"""
Subscription Registry

Owns every live subscription, indexed two ways:

  - by id, for O(1) lookup when polling or unsubscribing
  - by channel (ChannelDirectory), for fan-out when publishing

Locking:
  - the registry lock guards both indexes and is held only for dict work;
    nothing else is ever acquired while it is held
  - each Channel has a lock held for a whole publish fan-out, and taken by
    subscribe/unsubscribe on that channel, so fan-outs never interleave
  - each Subscription has a lock guarding its queue (append vs. drain)

A channel lock is always taken without the registry lock held. The registry
lock and subscription locks may then be taken briefly inside it. Waiting on
one channel therefore never stalls lookups or publishes on another.
"""
from __future__ import annotations

import itertools
import logging
import threading
import time
import uuid
from collections import deque
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Optional

from .errors import BrokerClosedError, InvariantError
from .filters import Predicate
from .projection import Projection

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class OverflowPolicy(str, Enum):
    """What happens when a document arrives for a full subscription queue."""

    DROP_OLDEST = "drop_oldest"   # discard the oldest queued document
    REJECT = "reject"             # do not queue the new document


class SubscriptionState(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


# ── Subscription ──────────────────────────────────────────────────────────────

class Subscription:
    """
    A standing registration on one channel with its own FIFO queue.

    The queue is only touched under the subscription's lock: offer()
    appends, drain() swaps the queue for an empty one, close() discards it.
    """

    __slots__ = (
        "id",
        "channel",
        "predicate",
        "projection",
        "max_queue_size",
        "overflow_policy",
        "created_at",
        "last_polled_at",
        "dropped",
        "_queue",
        "_lock",
        "_state",
        "_overflowing",
    )

    def __init__(
        self,
        subscription_id: str,
        channel: str,
        predicate: Predicate | None = None,
        projection: Projection | None = None,
        max_queue_size: int = 0,
        overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST,
        created_at: float = 0.0,
    ) -> None:
        self.id = subscription_id
        self.channel = channel
        self.predicate = predicate
        self.projection = projection
        self.max_queue_size = max_queue_size
        self.overflow_policy = overflow_policy
        self.created_at = created_at
        self.last_polled_at = created_at
        self.dropped = 0
        self._queue: deque[Mapping[str, Any]] = deque()
        self._lock = threading.Lock()
        self._state = SubscriptionState.ACTIVE
        self._overflowing = False

    def __repr__(self) -> str:
        return (
            f"Subscription(id={self.id!r}, channel={self.channel!r}, "
            f"state={self._state.value}, pending={len(self._queue)})"
        )

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is SubscriptionState.ACTIVE

    @property
    def pending(self) -> int:
        """Number of documents waiting to be drained."""
        with self._lock:
            return len(self._queue)

    def offer(self, document: Mapping[str, Any]) -> bool:
        """
        Append document to the queue, applying the overflow policy when full.

        Returns True if the document was queued. A closed subscription
        accepts nothing.
        """
        with self._lock:
            if self._state is not SubscriptionState.ACTIVE:
                return False

            capacity = self.max_queue_size
            if capacity and len(self._queue) >= capacity:
                self.dropped += 1
                if not self._overflowing:
                    self._overflowing = True
                    logger.warning(
                        "Subscription %s on '%s' is full (%d queued), policy=%s",
                        self.id,
                        self.channel,
                        capacity,
                        self.overflow_policy.value,
                    )
                if self.overflow_policy is OverflowPolicy.REJECT:
                    return False
                self._queue.popleft()

            self._queue.append(document)
            return True

    def drain(self, now: float) -> list[Mapping[str, Any]]:
        """Atomically take everything queued so far, leaving an empty queue."""
        with self._lock:
            self.last_polled_at = now
            if not self._queue:
                return []
            drained, self._queue = self._queue, deque()
            self._overflowing = False
        return list(drained)

    def close_if_idle(self, polled_before: float) -> bool:
        """
        Close the subscription only if its last poll was at or before
        polled_before. Checked under the queue lock, so a concurrent drain
        either lands first and keeps it alive or finds it closed.
        """
        with self._lock:
            if self._state is SubscriptionState.CLOSED or self.last_polled_at > polled_before:
                return False
            self._state = SubscriptionState.CLOSED
            self._queue = deque()
        return True

    def close(self) -> int:
        """Mark the subscription closed and discard its queue. Returns the discarded count."""
        with self._lock:
            if self._state is SubscriptionState.CLOSED:
                return 0
            self._state = SubscriptionState.CLOSED
            discarded = len(self._queue)
            self._queue = deque()
        return discarded


# ── Channel directory ─────────────────────────────────────────────────────────

class Channel:
    """Subscriptions registered under one channel name, in registration order."""

    __slots__ = ("name", "lock", "subscriptions", "retired")

    def __init__(self, name: str) -> None:
        self.name = name
        self.lock = threading.Lock()
        self.subscriptions: dict[str, Subscription] = {}
        # Set once the channel leaves the directory; a stale handle must re-look-up.
        self.retired = False


class ChannelDirectory:
    """
    Maps channel name to Channel. Entries exist only while at least one
    subscription is registered; callers hold the registry lock.
    """

    def __init__(self) -> None:
        self._channels: dict[str, Channel] = {}

    def __len__(self) -> int:
        return len(self._channels)

    def get(self, name: str) -> Channel | None:
        return self._channels.get(name)

    def get_or_create(self, name: str) -> Channel:
        channel = self._channels.get(name)
        if channel is None:
            channel = self._channels[name] = Channel(name)
        return channel

    def discard(self, channel: Channel) -> None:
        if self._channels.get(channel.name) is channel:
            del self._channels[channel.name]
        channel.retired = True

    def names(self) -> list[str]:
        return list(self._channels)


# ── Registry ──────────────────────────────────────────────────────────────────

def _object_id_factory() -> Callable[[], str]:
    """
    Return a generator of 24-hex-digit ids: a random per-registry prefix
    followed by a monotonic counter, so no id is ever issued twice.
    """
    prefix = uuid.uuid4().hex[:12]
    counter = itertools.count(1)
    return lambda: f"{prefix}{next(counter):012x}"


class SubscriptionRegistry:
    """
    Creates, indexes and removes subscriptions.

    Args:
        max_queue_size:  Per-subscription capacity; 0 means unbounded.
        overflow_policy: Applied when a queue is at capacity.
        clock:           Monotonic time source used for idle tracking.
        id_factory:      Returns a fresh subscription id on each call.
    """

    def __init__(
        self,
        max_queue_size: int = 0,
        overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST,
        clock: Clock = time.monotonic,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        if max_queue_size < 0:
            raise ValueError("max_queue_size must be >= 0")
        self._max_queue_size = max_queue_size
        self._overflow_policy = OverflowPolicy(overflow_policy)
        self._clock = clock
        self._new_id = id_factory or _object_id_factory()
        self._lock = threading.Lock()
        self._subscriptions: dict[str, Subscription] = {}
        self._directory = ChannelDirectory()
        self._closed = False

    @property
    def clock(self) -> Clock:
        return self._clock

    # ── Mutations ─────────────────────────────────────────────────────────────

    def register(
        self,
        channel: str,
        predicate: Predicate | None = None,
        projection: Projection | None = None,
    ) -> Subscription:
        """
        Create a subscription and index it under its id and channel.

        Raises:
            BrokerClosedError: If close() has been called.
            InvariantError: If the id factory returns an id already in use.
        """
        while True:
            with self._lock:
                self._check_open()
                entry = self._directory.get_or_create(channel)

            with entry.lock:
                if entry.retired:
                    continue
                with self._lock:
                    try:
                        subscription = self._index(entry, predicate, projection)
                    finally:
                        if not entry.subscriptions:
                            self._directory.discard(entry)
                return subscription

    def _index(
        self,
        entry: Channel,
        predicate: Predicate | None,
        projection: Projection | None,
    ) -> Subscription:
        # Caller holds entry.lock and the registry lock.
        self._check_open()
        subscription_id = self._new_id()
        if subscription_id in self._subscriptions:
            raise InvariantError(
                "Duplicate subscription id generated",
                {"subscription_id": subscription_id},
            )

        subscription = Subscription(
            subscription_id,
            entry.name,
            predicate=predicate,
            projection=projection,
            max_queue_size=self._max_queue_size,
            overflow_policy=self._overflow_policy,
            created_at=self._clock(),
        )
        entry.subscriptions[subscription_id] = subscription
        self._subscriptions[subscription_id] = subscription
        return subscription

    def remove(
        self,
        subscription_id: str,
        idle_cutoff: Optional[float] = None,
    ) -> Subscription | None:
        """
        Remove a subscription from both indexes and close it.

        With idle_cutoff, the subscription is only removed if it has not been
        polled after that time; the check and the close are atomic with
        respect to drain().

        Returns the closed subscription, or None if the id is not live (or
        was polled after idle_cutoff).
        """
        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is None:
                return None
            entry = self._directory.get(subscription.channel)
            if entry is None:
                raise InvariantError(
                    "Subscription indexed by id but its channel is missing",
                    {"subscription_id": subscription_id, "channel": subscription.channel},
                )

        # While the subscription stays indexed its channel entry cannot be
        # retired, so this entry is current for as long as the id is live.
        with entry.lock:
            if idle_cutoff is not None and not subscription.close_if_idle(idle_cutoff):
                return None
            with self._lock:
                if self._subscriptions.get(subscription_id) is not subscription:
                    return None
                del self._subscriptions[subscription_id]
                entry.subscriptions.pop(subscription_id, None)
                if not entry.subscriptions:
                    self._directory.discard(entry)
            subscription.close()

        return subscription

    def close(self) -> list[Subscription]:
        """
        Refuse any further register() and return every live subscription.

        The caller removes the returned subscriptions; nothing registered
        after this call can slip past that snapshot.
        """
        with self._lock:
            self._closed = True
            return list(self._subscriptions.values())

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise BrokerClosedError("FeedBroker is closed")

    # ── Lookups ───────────────────────────────────────────────────────────────

    def get(self, subscription_id: str) -> Subscription | None:
        with self._lock:
            return self._subscriptions.get(subscription_id)

    def subscriptions(self) -> list[Subscription]:
        """Snapshot of every live subscription."""
        with self._lock:
            return list(self._subscriptions.values())

    @contextmanager
    def locked_channel(self, name: str) -> Iterator[Channel | None]:
        """
        Hold the named channel's lock for the duration of the block.

        Yields None when nobody is subscribed to the channel.
        """
        while True:
            with self._lock:
                entry = self._directory.get(name)
            if entry is None:
                yield None
                return
            with entry.lock:
                if not entry.retired:
                    yield entry
                    return

    @property
    def channel_count(self) -> int:
        with self._lock:
            return len(self._directory)

    @property
    def subscription_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def channel_names(self) -> list[str]:
        with self._lock:
            return self._directory.names()
