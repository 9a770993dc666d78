"""
Tests for feed_broker.broker

End-to-end subscribe / publish / poll behaviour, including the channel
scenarios the command surface was built against and concurrent use.
"""
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from feed_broker import (
    BrokerClosedError,
    BrokerConfig,
    FeedBroker,
    FilterError,
    OverflowPolicy,
    ProjectionError,
    ValidationError,
)


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def broker():
    with FeedBroker() as b:
        yield b


def _publish_counts(broker: FeedBroker, channel: str = "A", n: int = 6) -> None:
    for i in range(n):
        broker.publish(channel, {"body": "hello", "count": i})


# ── Reference scenarios ───────────────────────────────────────────────────────

def test_filter_scenario(broker):
    plain = broker.subscribe("A")
    filtered = broker.subscribe("A", filter={"count": {"gt": 3}})
    _publish_counts(broker)

    result = broker.poll([plain, filtered])

    assert [d["count"] for d in result.messages[plain]["A"]] == [0, 1, 2, 3, 4, 5]
    assert [d["count"] for d in result.messages[filtered]["A"]] == [4, 5]


def test_projection_scenario(broker):
    plain = broker.subscribe("A")
    projected = broker.subscribe("A", projection={"count": 1})
    _publish_counts(broker)

    result = broker.poll([plain, projected])

    assert [d["count"] for d in result.messages[plain]["A"]] == list(range(6))
    assert all(d["body"] == "hello" for d in result.messages[plain]["A"])
    assert result.messages[projected]["A"] == [{"count": i} for i in range(6)]


def test_filter_and_projection_scenario(broker):
    plain = broker.subscribe("A")
    both = broker.subscribe("A", filter={"count": {"$gt": 3}}, projection={"count": 1})
    _publish_counts(broker)

    result = broker.poll([plain, both])

    assert len(result.messages[plain]["A"]) == 6
    assert result.messages[both]["A"] == [{"count": 4}, {"count": 5}]
    assert all("body" not in d for d in result.messages[both]["A"])


def test_second_poll_drains_nothing(broker):
    sub = broker.subscribe("A")
    _publish_counts(broker)

    assert len(broker.poll([sub]).documents(sub)) == 6
    assert broker.poll([sub]).messages == {}


def test_fan_out_is_independent_per_subscription(broker):
    subs = {
        "all": broker.subscribe("A"),
        "even": broker.subscribe("A", filter={"count": {"in": [0, 2, 4]}}),
        "small": broker.subscribe("A", filter={"count": {"lte": 1}}, projection={"body": 1}),
        "other": broker.subscribe("B"),
    }
    _publish_counts(broker)

    result = broker.poll(subs.values())

    assert len(result.documents(subs["all"])) == 6
    assert [d["count"] for d in result.documents(subs["even"])] == [0, 2, 4]
    assert result.documents(subs["small"]) == [{"body": "hello"}, {"body": "hello"}]
    assert subs["other"] not in result.messages


def test_polling_one_subscription_leaves_others_queued(broker):
    first = broker.subscribe("A")
    second = broker.subscribe("A")
    broker.publish("A", {"n": 1})

    broker.poll(first)
    assert broker.poll([second]).documents(second) == [{"n": 1}]


def test_poll_accepts_single_id_string(broker):
    sub = broker.subscribe("A")
    broker.publish("A", {"n": 1})
    assert broker.poll(sub).documents(sub) == [{"n": 1}]


def test_subscriber_added_later_misses_earlier_documents(broker):
    broker.publish("A", {"n": 1})
    sub = broker.subscribe("A")
    broker.publish("A", {"n": 2})
    assert broker.poll([sub]).documents(sub) == [{"n": 2}]


# ── Subscribe validation ──────────────────────────────────────────────────────

def test_bad_filter_creates_no_subscription(broker):
    with pytest.raises(FilterError):
        broker.subscribe("A", filter={"count": {"approx": 3}})
    assert broker.stats.subscriptions == 0
    assert broker.stats.channels == 0


def test_bad_projection_creates_no_subscription(broker):
    with pytest.raises(ProjectionError):
        broker.subscribe("A", projection={"body": 0})
    assert broker.stats.subscriptions == 0


def test_bad_channel_rejected(broker):
    with pytest.raises(ValidationError):
        broker.subscribe("")


# ── Unsubscribe ───────────────────────────────────────────────────────────────

def test_unsubscribe_discards_pending_and_is_idempotent(broker):
    sub = broker.subscribe("A")
    broker.publish("A", {"n": 1})

    assert broker.unsubscribe(sub) is True
    assert broker.unsubscribe(sub) is False
    assert broker.subscription(sub) is None

    result = broker.poll([sub])
    assert result.messages == {}
    assert sub in result.errors


def test_channel_disappears_with_last_subscription(broker):
    a = broker.subscribe("A")
    b = broker.subscribe("A")
    broker.unsubscribe(a)
    assert broker.stats.channels == 1
    broker.unsubscribe(b)
    assert broker.stats.channels == 0

    again = broker.subscribe("A")
    broker.publish("A", {"n": 1})
    assert broker.poll([again]).documents(again) == [{"n": 1}]


# ── Bounded queues ────────────────────────────────────────────────────────────

def test_drop_oldest_bounds_queue():
    with FeedBroker(max_queue_size=2) as broker:
        sub = broker.subscribe("A")
        _publish_counts(broker)

        assert [d["count"] for d in broker.poll([sub]).documents(sub)] == [4, 5]
        assert broker.stats.dropped == 4


def test_reject_does_not_starve_other_subscriptions():
    with FeedBroker(max_queue_size=2, overflow_policy=OverflowPolicy.REJECT) as broker:
        slow = broker.subscribe("A")
        fast = broker.subscribe("A")
        for i in range(4):
            broker.publish("A", {"count": i})
            broker.poll([fast])

        assert [d["count"] for d in broker.poll([slow]).documents(slow)] == [0, 1]
        assert broker.stats.delivered == 6


def test_dropped_count_survives_unsubscribe():
    with FeedBroker(max_queue_size=1) as broker:
        sub = broker.subscribe("A")
        _publish_counts(broker, n=3)
        broker.unsubscribe(sub)
        assert broker.stats.dropped == 2


# ── Idle reaping ──────────────────────────────────────────────────────────────

def test_reap_idle_closes_unpolled_subscriptions():
    now = [0.0]
    with FeedBroker(idle_timeout=10, clock=lambda: now[0]) as broker:
        idle = broker.subscribe("A")
        active = broker.subscribe("A")

        now[0] = 8.0
        broker.poll([active])
        now[0] = 12.0

        assert broker.reap_idle() == [idle]
        assert broker.subscription(idle) is None
        assert broker.subscription(active) is not None


def test_reap_idle_spares_subscription_polled_after_scan():
    now = [0.0]
    with FeedBroker(idle_timeout=10, clock=lambda: now[0]) as broker:
        sub = broker.subscribe("A")
        now[0] = 12.0
        subscription = broker.subscription(sub)
        real_remove = broker._registry.remove

        def poll_then_remove(subscription_id, **kwargs):
            broker.poll([sub])
            return real_remove(subscription_id, **kwargs)

        with patch.object(broker._registry, "remove", side_effect=poll_then_remove):
            assert broker.reap_idle() == []

        assert broker.subscription(sub) is subscription
        assert subscription.is_active


def test_reap_disabled_without_timeout(broker):
    broker.subscribe("A")
    assert broker.reap_idle(now=1e9) == []


# ── Lifecycle / stats ─────────────────────────────────────────────────────────

def test_close_rejects_further_operations():
    broker = FeedBroker()
    sub = broker.subscribe("A")
    broker.close()
    broker.close()

    assert broker.closed
    assert broker.stats.subscriptions == 0
    for call in (
        lambda: broker.subscribe("A"),
        lambda: broker.publish("A", {}),
        lambda: broker.poll([sub]),
        lambda: broker.unsubscribe(sub),
    ):
        with pytest.raises(BrokerClosedError):
            call()


def test_close_during_subscribe_leaves_nothing_live():
    broker = FeedBroker()

    class ClosingFilter(dict):
        def items(self):
            broker.close()
            return super().items()

    with pytest.raises(BrokerClosedError):
        broker.subscribe("A", filter=ClosingFilter(count=1))

    assert broker.closed
    assert broker.stats.subscriptions == 0
    assert broker.stats.channels == 0


def test_from_settings():
    config = BrokerConfig(max_queue_size=5, overflow_policy=OverflowPolicy.REJECT, idle_timeout_s=0)
    with FeedBroker.from_settings(config) as broker:
        sub_id = broker.subscribe("A")
        sub = broker.subscription(sub_id)
        assert sub.max_queue_size == 5
        assert sub.overflow_policy is OverflowPolicy.REJECT
        assert broker.idle_timeout is None


def test_stats(broker):
    a = broker.subscribe("A")
    broker.subscribe("B")
    broker.publish("A", {"n": 1})
    broker.publish_many(["A", "B", "C"], {"n": 2})

    stats = broker.stats
    assert stats.channels == 2
    assert stats.subscriptions == 2
    assert stats.published == 4
    assert stats.delivered == 3
    assert stats.pending == 3

    broker.poll([a])
    assert broker.stats.pending == 1


# ── Concurrency ───────────────────────────────────────────────────────────────

def test_concurrent_publishers_keep_per_channel_order(broker):
    subs = [broker.subscribe("A") for _ in range(4)]
    n_publishers, per_publisher = 4, 250

    def produce(publisher_id: int) -> None:
        for seq in range(per_publisher):
            broker.publish("A", {"p": publisher_id, "seq": seq})

    with ThreadPoolExecutor(max_workers=n_publishers) as pool:
        list(pool.map(produce, range(n_publishers)))

    result = broker.poll(subs)
    sequences = [
        [(d["p"], d["seq"]) for d in result.documents(sub)] for sub in subs
    ]

    # Every subscription saw the same total order.
    assert all(seq == sequences[0] for seq in sequences)
    assert len(sequences[0]) == n_publishers * per_publisher
    for publisher_id in range(n_publishers):
        own = [s for p, s in sequences[0] if p == publisher_id]
        assert own == list(range(per_publisher))


def test_concurrent_poll_never_splits_or_duplicates(broker):
    sub = broker.subscribe("A")
    total = 2000
    collected: list[int] = []
    done = threading.Event()

    def produce() -> None:
        for i in range(total):
            broker.publish("A", {"i": i})
        done.set()

    def consume() -> None:
        while True:
            finished = done.is_set()
            collected.extend(d["i"] for d in broker.poll([sub]).documents(sub))
            if finished:
                return

    producer = threading.Thread(target=produce)
    consumer = threading.Thread(target=consume)
    consumer.start()
    producer.start()
    producer.join(timeout=30)
    consumer.join(timeout=30)

    assert collected == list(range(total))


def test_poll_on_other_channel_not_blocked_by_fan_out(broker):
    broker.subscribe("A")
    sub_b = broker.subscribe("B")
    broker.publish("B", {"n": 1})
    results: list = []

    # Holding A's lock stands in for a long fan-out on A.
    with broker._registry.locked_channel("A"):
        subscriber = threading.Thread(target=broker.subscribe, args=("A",))
        subscriber.start()
        subscriber.join(timeout=0.1)
        assert subscriber.is_alive()

        poller = threading.Thread(target=lambda: results.append(broker.poll([sub_b])))
        poller.start()
        poller.join(timeout=1)
        assert not poller.is_alive()

        assert broker.publish("B", {"n": 2}) == 1

    subscriber.join(timeout=5)
    assert results[0].documents(sub_b) == [{"n": 1}]
    assert broker.stats.subscriptions == 3


def test_concurrent_subscribe_and_unsubscribe(broker):
    def churn(worker: int) -> int:
        kept = 0
        for i in range(200):
            sub = broker.subscribe(f"ch-{worker % 3}")
            broker.publish(f"ch-{worker % 3}", {"i": i})
            if i % 2:
                broker.unsubscribe(sub)
            else:
                kept += 1
        return kept

    with ThreadPoolExecutor(max_workers=6) as pool:
        kept = sum(pool.map(churn, range(6)))

    assert broker.stats.subscriptions == kept
    assert broker.stats.channels == 3
