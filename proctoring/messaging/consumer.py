"""
RabbitMQ consumers.

BaseConsumer: background thread with automatic reconnection; each instance
owns one connection + channel.

AlertConsumer: feeds alert notifications published by any service instance
into this process's AlertFeed, so live monitors wake on push instead of
waiting for the next poll.
"""
from __future__ import annotations

import abc
import asyncio
import json
import logging
import threading
from typing import TYPE_CHECKING

import pika
import pika.exceptions

from proctoring.config import get_settings
from proctoring.schemas import AlertNotice

if TYPE_CHECKING:
    from proctoring.monitoring.feed import AlertFeed

logger = logging.getLogger(__name__)

_RECONNECT_DELAY   = 5    # seconds between reconnect attempts
_DEFAULT_PREFETCH  = 10


class BaseConsumer(threading.Thread, abc.ABC):
    """
    Daemon thread bound to one queue on the proctoring exchange.

    Subclasses provide queue_name, routing_key and process_message(); a
    message is acked once process_message() returns and dropped (nack, no
    requeue) when it raises.
    """

    def __init__(self, prefetch: int = _DEFAULT_PREFETCH) -> None:
        super().__init__(name=self.__class__.__name__, daemon=True)
        self._prefetch   = prefetch
        self._stopping   = threading.Event()
        self._connection: pika.BlockingConnection | None = None
        self._channel:    pika.adapters.blocking_connection.BlockingChannel | None = None
        self.connected   = threading.Event()

    # ── Abstract interface ──────────────────────────────────────────────────

    @property
    @abc.abstractmethod
    def queue_name(self) -> str:
        """Queue this consumer drains."""

    @property
    @abc.abstractmethod
    def routing_key(self) -> str:
        """Routing key the queue is bound with on the exchange."""

    @abc.abstractmethod
    def process_message(self, body: bytes, properties: pika.BasicProperties) -> None:
        ...

    # ── Thread entry point ──────────────────────────────────────────────────

    def run(self) -> None:
        logger.info("%s consuming from %s", self.name, self.queue_name)
        while not self._stopping.is_set():
            try:
                self._open_channel()
                self._channel.basic_consume(queue=self.queue_name, on_message_callback=self._on_message)
                self._channel.start_consuming()
            except pika.exceptions.AMQPError as exc:
                logger.warning("%s lost the broker (%s); retrying in %ds",
                               self.name, exc, _RECONNECT_DELAY)
            except Exception:
                if self._stopping.is_set():
                    break
                logger.exception("%s crashed; retrying in %ds", self.name, _RECONNECT_DELAY)
            finally:
                self.connected.clear()
                self._teardown()
            self._stopping.wait(_RECONNECT_DELAY)
        logger.info("%s stopped", self.name)

    def stop(self) -> None:
        self._stopping.set()
        self.connected.clear()
        connection = self._connection
        if connection is not None and connection.is_open:
            # start_consuming() blocks this consumer's thread; stop it from there
            connection.add_callback_threadsafe(self._halt)

    # ── Internal helpers ────────────────────────────────────────────────────

    def _open_channel(self) -> None:
        settings = get_settings()
        params = pika.URLParameters(settings.rabbitmq_url)
        params.heartbeat                  = 60
        params.blocked_connection_timeout = 30
        self._connection = pika.BlockingConnection(params)
        channel = self._connection.channel()
        channel.exchange_declare(exchange=settings.exchange_name, exchange_type="topic", durable=True)
        channel.queue_declare(queue=self.queue_name, durable=True)
        channel.queue_bind(queue=self.queue_name, exchange=settings.exchange_name, routing_key=self.routing_key)
        channel.basic_qos(prefetch_count=self._prefetch)
        self._channel = channel
        self.connected.set()

    def _halt(self) -> None:
        if self._channel is not None and self._channel.is_open:
            self._channel.stop_consuming()

    def _on_message(self, channel, method, properties, body: bytes) -> None:
        tag = method.delivery_tag
        try:
            self.process_message(body, properties)
        except Exception as exc:
            logger.error("%s rejected message %s: %s", self.name, tag, exc)
            # a requeued poison message would loop forever
            channel.basic_nack(delivery_tag=tag, requeue=False)
            return
        channel.basic_ack(delivery_tag=tag)

    def _teardown(self) -> None:
        connection, self._connection, self._channel = self._connection, None, None
        if connection is None or connection.is_closed:
            return
        try:
            connection.close()
        except pika.exceptions.AMQPError as exc:
            logger.debug("%s close failed: %s", self.name, exc)


class AlertConsumer(BaseConsumer):
    """Bridges alert messages into an AlertFeed owned by an asyncio loop."""

    def __init__(self, feed: "AlertFeed", loop: asyncio.AbstractEventLoop) -> None:
        super().__init__()
        self._feed = feed
        self._loop = loop

    @property
    def queue_name(self) -> str:
        return get_settings().alert_queue

    @property
    def routing_key(self) -> str:
        return get_settings().alert_routing_key

    def process_message(self, body: bytes, properties: pika.BasicProperties) -> None:
        notice = AlertNotice.model_validate(json.loads(body))
        if self._loop.is_closed():
            logger.warning("Alert %s dropped: event loop closed", notice.alert_id)
            return
        self._loop.call_soon_threadsafe(self._feed.push_nowait, notice)
