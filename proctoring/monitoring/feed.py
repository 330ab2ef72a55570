"""
AlertFeed — the push side of live monitoring.

Alerts reach the feed from two places:
  - in-process, from SessionManager.alerts (same service instance)
  - over RabbitMQ, via messaging.consumer.AlertConsumer (any instance)

The same alert can arrive both ways, so the feed drops ids it has already
seen. Each monitor opens its own FeedListener; the feed fans out to all of
them. ``connected`` tells a monitor whether push is live or whether it
should fall back to polling.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Callable

from proctoring.events import EventChannel, Subscription
from proctoring.schemas import AlertNotice

logger = logging.getLogger(__name__)

_SEEN_LIMIT = 2048


class FeedListener:
    def __init__(self, feed: "AlertFeed") -> None:
        self._feed  = feed
        self._queue: asyncio.Queue[AlertNotice] = asyncio.Queue()

    def put(self, notice: AlertNotice) -> None:
        self._queue.put_nowait(notice)

    async def next_batch(self, timeout: float) -> list[AlertNotice]:
        """Wait up to ``timeout`` seconds for notices; returns [] on timeout."""
        try:
            first = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return []
        batch = [first]
        while not self._queue.empty():
            batch.append(self._queue.get_nowait())
        return batch

    def close(self) -> None:
        self._feed._listeners.discard(self)


class AlertFeed:
    def __init__(self) -> None:
        self.channel: EventChannel[AlertNotice] = EventChannel("alert-feed")
        self._listeners: set[FeedListener] = set()
        self._sources:   list[Callable[[], bool]] = []
        self._seen_order: deque[str] = deque()
        self._seen:       set[str] = set()
        self._pending:    set[asyncio.Task] = set()

    # ── Sources ───────────────────────────────────────────────────────────────

    def add_source(self, is_live: Callable[[], bool]) -> None:
        self._sources.append(is_live)

    def attach_manager(self, manager) -> Subscription:
        """Receive alerts raised by a SessionManager in this process."""
        self.add_source(lambda: True)
        return manager.alerts.subscribe(self.publish)

    def attach_consumer(self, consumer) -> None:
        self.add_source(consumer.connected.is_set)

    @property
    def connected(self) -> bool:
        return any(is_live() for is_live in self._sources)

    # ── Delivery ──────────────────────────────────────────────────────────────

    def listen(self) -> FeedListener:
        listener = FeedListener(self)
        self._listeners.add(listener)
        return listener

    def push_nowait(self, notice: AlertNotice) -> bool:
        """Fan a notice out to listeners; False if it was already delivered."""
        if notice.alert_id in self._seen:
            return False
        self._remember(notice.alert_id)
        for listener in list(self._listeners):
            listener.put(notice)
        if self.channel.subscriber_count:
            task = asyncio.get_running_loop().create_task(self.channel.publish(notice))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return True

    async def publish(self, notice: AlertNotice) -> None:
        if self.push_nowait(notice):
            logger.debug("Alert %s (%s) pushed to %d monitor(s)",
                         notice.alert_id, notice.severity.value, len(self._listeners))

    def _remember(self, alert_id: str) -> None:
        self._seen.add(alert_id)
        self._seen_order.append(alert_id)
        if len(self._seen_order) > _SEEN_LIMIT:
            self._seen.discard(self._seen_order.popleft())
