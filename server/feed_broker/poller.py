"""
Feed Poller

Drains subscription queues on request. poll() never waits for messages:
it returns whatever is queued right now and leaves every drained queue
empty, so an immediate second poll returns nothing new.

Result shape (PollResult.messages):
    {
        "<subscription id>": {
            "<channel>": [document, document, ...],   # publish order
        },
        ...
    }

Subscriptions with nothing queued have no entry. Unknown ids contribute
nothing to messages and are reported in PollResult.errors instead.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .registry import SubscriptionRegistry

logger = logging.getLogger(__name__)

SUBSCRIPTION_NOT_FOUND = "Subscription not found."


@dataclass
class PollResult:
    """Documents drained by one poll call plus per-id errors."""

    messages: dict[str, dict[str, list[Mapping[str, Any]]]] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    def documents(self, subscription_id: str) -> list[Mapping[str, Any]]:
        """All documents drained for one subscription, across its channels."""
        by_channel = self.messages.get(subscription_id, {})
        return [doc for docs in by_channel.values() for doc in docs]

    @property
    def count(self) -> int:
        return sum(len(docs) for by_channel in self.messages.values() for docs in by_channel.values())

    def to_dict(self) -> dict[str, Any]:
        return {"messages": self.messages, "errors": self.errors}


class FeedPoller:
    """Atomically drains the queues of the subscriptions a caller names."""

    def __init__(self, registry: SubscriptionRegistry) -> None:
        self._registry = registry

    def poll(self, subscription_ids: Iterable[str]) -> PollResult:
        """
        Drain every named subscription.

        Args:
            subscription_ids: Ids to drain. Duplicates are drained once.

        Returns:
            A freshly built PollResult.
        """
        result = PollResult()
        now = self._registry.clock()

        requested = list(dict.fromkeys(subscription_ids))

        for subscription_id in requested:
            subscription = self._registry.get(subscription_id)
            if subscription is None:
                result.errors[subscription_id] = SUBSCRIPTION_NOT_FOUND
                continue

            drained = subscription.drain(now)
            if drained:
                result.messages.setdefault(subscription_id, {}).setdefault(
                    subscription.channel, []
                ).extend(drained)

        logger.debug(
            "Polled %d subscription(s), drained %d document(s), %d error(s)",
            len(requested),
            result.count,
            len(result.errors),
        )
        return result
