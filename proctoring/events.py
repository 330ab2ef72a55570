"""
EventChannel — typed publish/subscribe used between the engine, the session
manager, the live-monitoring feed and the exam runner.

Subscribers may be plain functions or coroutine functions. A subscriber
that raises is logged and skipped; the remaining subscribers still receive
the item.
"""
from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Generic, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")

Subscriber = Callable[[T], Union[None, Awaitable[None]]]


class Subscription:
    def __init__(self, channel: "EventChannel[Any]", callback: Callable) -> None:
        self._channel  = channel
        self._callback = callback
        self.active    = True

    def unsubscribe(self) -> None:
        if self.active:
            self._channel._remove(self._callback)
            self.active = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.unsubscribe()


class EventChannel(Generic[T]):
    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: list[Subscriber[T]] = []

    def subscribe(self, callback: Subscriber[T]) -> Subscription:
        self._subscribers.append(callback)
        return Subscription(self, callback)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, item: T) -> int:
        """Deliver ``item`` to every subscriber; returns how many succeeded."""
        delivered = 0
        # Copy: a subscriber may unsubscribe itself while being called
        for callback in list(self._subscribers):
            try:
                outcome = callback(item)
                if inspect.isawaitable(outcome):
                    await outcome
                delivered += 1
            except Exception as exc:
                logger.error("%s subscriber %r failed: %s", self.name, callback, exc, exc_info=True)
        return delivered

    def _remove(self, callback: Callable) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass
