"""
Idle Subscription Reaper

Consumers that stop polling leave their queues filling up. run_reaper()
periodically closes subscriptions that have not been polled for the
broker's idle_timeout. Run it as a task next to the service's other loops:

    reaper = asyncio.create_task(run_reaper(broker, interval=60))
    ...
    reaper.cancel()
"""
from __future__ import annotations

import asyncio
import logging

from .broker import FeedBroker

logger = logging.getLogger(__name__)


async def run_reaper(broker: FeedBroker, interval: float) -> None:
    """
    Call broker.reap_idle() every interval seconds until cancelled or the
    broker is closed.
    """
    if interval <= 0:
        raise ValueError("interval must be positive")
    if broker.idle_timeout is None:
        logger.info("Idle reaping disabled, reaper not started")
        return

    logger.info(
        "Reaper started (interval=%ss, idle_timeout=%ss)",
        interval,
        broker.idle_timeout,
    )
    try:
        while not broker.closed:
            await asyncio.sleep(interval)
            broker.reap_idle()
    finally:
        logger.info("Reaper stopped")
