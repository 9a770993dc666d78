#!/usr/bin/env python3
"""
Pub/Sub integration smoke test.

Builds a FeedBroker from the environment, drives it through the JSON
command surface, and prints what each subscription received.

Scenarios (each on a fresh channel):
  filter             plain subscription vs. {count: {$gt: 3}}
  projection         plain subscription vs. projection {count: 1}
  filter+projection  plain subscription vs. both combined

Every scenario publishes {body: "hello", count: i} for i in 0..5, polls all
subscriptions in one call, then polls again to show the queues are drained.

Usage (from server/):
    python integration_test_pubsub.py
    python integration_test_pubsub.py --delay 0.01 --verbose
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from dotenv import load_dotenv

from feed_broker import CommandHandler, FeedBroker, load_settings, run_reaper

# ── ANSI colours (degrade gracefully if terminal doesn't support them) ────────

RESET = "\033[0m"
BOLD = "\033[1m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
CYAN = "\033[36m"
RED = "\033[31m"
DIM = "\033[2m"


def _c(code: str, text: str) -> str:
    return f"{code}{text}{RESET}"


# ── Scenarios ─────────────────────────────────────────────────────────────────
#
# name               subscriptions (label, filter, projection)

SCENARIOS: list[tuple[str, list[tuple[str, dict | None, dict | None]]]] = [
    ("filter", [
        ("plain", None, None),
        ("count>3", {"count": {"$gt": 3}}, None),
    ]),
    ("projection", [
        ("plain", None, None),
        ("count only", None, {"count": 1}),
    ]),
    ("filter+projection", [
        ("plain", None, None),
        ("count>3, count only", {"count": {"$gt": 3}}, {"count": 1}),
    ]),
]


def _call(handler: CommandHandler, command: dict[str, Any]) -> dict[str, Any]:
    """Send a command through the JSON path, as a transport would."""
    reply = json.loads(handler.handle_raw(json.dumps(command)))
    if not reply.get("ok"):
        raise RuntimeError(f"{next(iter(command))} failed: {reply.get('errmsg')}")
    return reply


async def run_scenario(
    handler: CommandHandler,
    name: str,
    subscriptions: list[tuple[str, dict | None, dict | None]],
    inter_item_delay: float,
) -> None:
    channel = f"smoke:{name}"
    print(_c(BOLD, f"Scenario: {name}") + _c(DIM, f"  (channel {channel})"))

    labels: dict[str, str] = {}
    for label, filter_spec, projection_spec in subscriptions:
        command: dict[str, Any] = {"subscribe": channel}
        if filter_spec is not None:
            command["filter"] = filter_spec
        if projection_spec is not None:
            command["projection"] = projection_spec
        subscription_id = _call(handler, command)["subscriptionId"]
        labels[subscription_id] = label
        print(f"  subscribed {_c(CYAN, label):<32} id={_c(DIM, subscription_id)}")

    for i in range(6):
        _call(handler, {"publish": channel, "message": {"body": "hello", "count": i}})
        await asyncio.sleep(inter_item_delay)

    reply = _call(handler, {"poll": list(labels)})
    for subscription_id, label in labels.items():
        documents = reply["messages"].get(subscription_id, {}).get(channel, [])
        print(f"  {_c(CYAN, label):<32} {len(documents)} message(s)")
        for document in documents:
            print(f"      {document}")

    again = _call(handler, {"poll": list(labels)})
    leftover = sum(len(docs) for by_ch in again["messages"].values() for docs in by_ch.values())
    status = _c(GREEN, "drained") if leftover == 0 else _c(RED, f"{leftover} left over")
    print(f"  second poll: {status}")

    for subscription_id in labels:
        _call(handler, {"unsubscribe": subscription_id})
    print()


# ── Main ──────────────────────────────────────────────────────────────────────

async def main(inter_item_delay: float) -> None:
    settings = load_settings()

    print()
    print(_c(BOLD, "=== pub/sub integration smoke test ==="))
    print(_c(DIM, (
        f"max_queue_size={settings.max_queue_size} "
        f"overflow={settings.overflow_policy.value} "
        f"idle_timeout={settings.idle_timeout_s}s"
    )))
    print()

    with FeedBroker.from_settings(settings) as broker:
        reaper = asyncio.create_task(run_reaper(broker, settings.reap_interval_s))
        handler = CommandHandler(broker)
        try:
            for name, subscriptions in SCENARIOS:
                await run_scenario(handler, name, subscriptions, inter_item_delay)
        finally:
            reaper.cancel()
            await asyncio.gather(reaper, return_exceptions=True)

        stats = broker.stats
        print(_c(BOLD, "Broker stats:"))
        print(
            f"  published={stats.published} delivered={stats.delivered} "
            f"dropped={stats.dropped} channels={stats.channels} "
            f"subscriptions={stats.subscriptions}"
        )

    print()
    print(_c(GREEN, _c(BOLD, "Done.")))
    print()


# ── Entry point ───────────────────────────────────────────────────────────────

if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=0.0,
        metavar="SECS",
        help="Delay between published documents in seconds (default: 0)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log broker activity at DEBUG level",
    )
    args = parser.parse_args()

    load_dotenv(".env")
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(name)s] %(levelname)s — %(message)s",
    )

    try:
        asyncio.run(main(inter_item_delay=args.delay))
    except KeyboardInterrupt:
        pass
    except Exception as exc:
        print(_c(RED, f"\nFailed: {exc}"))
        sys.exit(1)
