"""
Feed Publisher

Fans a published document out to every subscription registered on its
channel. Each subscription's filter is evaluated against the document and,
on a match, the subscription's projection is applied and the result is
appended to that subscription's queue.

Usage:
    publisher = FeedPublisher(registry)

    publisher.publish("A", {"body": "hello", "count": 4})
    publisher.publish_many(["A", "B"], {"body": "hello"})

The whole fan-out for one channel runs under that channel's lock, so every
subscription on a channel sees documents in the same order publish() was
called, and a subscribe racing a publish either gets the document in full
or not at all.
"""
from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Mapping
from typing import Any

from .errors import ValidationError
from .filters import matches
from .projection import project
from .registry import SubscriptionRegistry

logger = logging.getLogger(__name__)


def validate_channel(channel: Any) -> str:
    """Return channel unchanged, or raise ValidationError if it is not a non-empty string."""
    if not isinstance(channel, str) or not channel:
        raise ValidationError("channel must be a non-empty string", field="channel", value=channel)
    return channel


class FeedPublisher:
    """
    Publishes documents into subscription queues held by a SubscriptionRegistry.

    Publishing to a channel nobody subscribes to is legal and delivers nothing.
    """

    def __init__(self, registry: SubscriptionRegistry) -> None:
        self._registry = registry
        self._stats_lock = threading.Lock()
        self.published = 0
        self.delivered = 0

    # ── Publish ───────────────────────────────────────────────────────────────

    def publish(self, channel: str, document: Mapping[str, Any]) -> int:
        """
        Publish a document to a single channel.

        Args:
            channel:  The channel name.
            document: Mapping payload. It is copied once, so later changes
                      by the caller do not reach queued copies.

        Returns:
            Number of subscription queues the document was appended to.

        Raises:
            ValidationError: If channel or document is malformed.
        """
        validate_channel(channel)
        if not isinstance(document, Mapping):
            raise ValidationError("message must be a mapping", field="message", value=document)

        snapshot = copy.deepcopy(dict(document))
        deliveries = 0

        with self._registry.locked_channel(channel) as entry:
            if entry is not None:
                for subscription in entry.subscriptions.values():
                    if not matches(subscription.predicate, snapshot):
                        continue
                    if subscription.offer(project(subscription.projection, snapshot)):
                        deliveries += 1

        with self._stats_lock:
            self.published += 1
            self.delivered += deliveries

        logger.debug("Published to '%s', reached %d subscription(s)", channel, deliveries)
        return deliveries

    def publish_many(self, channels: list[str], document: Mapping[str, Any]) -> int:
        """
        Publish the same document to multiple channels.

        Returns:
            Total queue deliveries summed across all channels.
        """
        for channel in channels:
            validate_channel(channel)

        total = 0
        for channel in channels:
            total += self.publish(channel, document)

        logger.debug(
            "Published to %d channel(s), reached %d subscription(s) total",
            len(channels),
            total,
        )
        return total
