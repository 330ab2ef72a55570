"""
Publishes alert and intervention notifications to the RabbitMQ topic exchange.

Live monitors on other service instances consume the alert routing key
(see messaging.consumer.AlertConsumer); student clients listen on the
intervention routing key.

Alert message contract (camelCase, matches schemas.AlertNotice):
{
    "alertId":   "uuid-string",
    "sessionId": "uuid-string",
    "examId":    "uuid-string",
    "studentId": "uuid-string",
    "alertType": "multiple_faces",
    "severity":  "critical",
    "title":     "Multiple Faces Detected",
    "message":   "...",
    "createdAt": "2024-01-01T10:00:00+00:00"
}

Publishing is best-effort: a failed publish is logged and dropped, never
raised into the detection path.
"""
import json
import logging
import threading

import pika
from pika.exceptions import AMQPConnectionError

from proctoring.config import get_settings
from proctoring.schemas import AlertNotice, Intervention

logger = logging.getLogger(__name__)

# Thread-local storage: publishes arrive from asyncio.to_thread workers
_local = threading.local()


def _get_channel() -> pika.adapters.blocking_connection.BlockingChannel:
    """
    Returns a per-thread pika channel, reconnecting if the connection is closed.
    pika's BlockingConnection is not thread-safe, hence one per thread.
    """
    conn: pika.BlockingConnection | None = getattr(_local, "connection", None)
    if conn is None or conn.is_closed:
        settings = get_settings()
        params = pika.URLParameters(settings.rabbitmq_url)
        params.heartbeat                  = 60
        params.blocked_connection_timeout = 30
        _local.connection = pika.BlockingConnection(params)
        _local.channel = _local.connection.channel()
        # Declare the exchange on every new channel
        _local.channel.exchange_declare(
            exchange=settings.exchange_name,
            exchange_type="topic",
            durable=True,
        )
        logger.info("Publisher: connected to RabbitMQ (thread %s)", threading.get_ident())

    return _local.channel


def publish_alert(notice: AlertNotice) -> bool:
    settings = get_settings()
    if not settings.messaging_enabled:
        return False
    body = notice.model_dump(mode="json", by_alias=True)
    return _publish_with_retry(settings.alert_routing_key, body)


def publish_intervention(intervention: Intervention) -> bool:
    settings = get_settings()
    if not settings.messaging_enabled:
        return False
    body = {
        "interventionId":   intervention.id,
        "sessionId":        intervention.session_id,
        "alertId":          intervention.alert_id,
        "interventionType": intervention.intervention_type.value,
        "message":          intervention.message,
        "issuedBy":         intervention.issued_by,
        "sentAt":           intervention.sent_at.isoformat(),
    }
    return _publish_with_retry(settings.intervention_routing_key, body)


def _publish_with_retry(routing_key: str, body: dict, attempts: int = 2) -> bool:
    settings = get_settings()
    payload = json.dumps(body).encode()
    for attempt in range(1, attempts + 1):
        try:
            channel = _get_channel()
            channel.basic_publish(
                exchange=settings.exchange_name,
                routing_key=routing_key,
                body=payload,
                properties=pika.BasicProperties(
                    content_type="application/json",
                    delivery_mode=pika.DeliveryMode.Persistent,
                ),
            )
            logger.debug("Published %s → sessionId=%s", routing_key, body.get("sessionId"))
            return True
        except (AMQPConnectionError, Exception) as exc:
            logger.warning("Publish attempt %d/%d failed: %s", attempt, attempts, exc)
            # Reset the thread-local connection so it is recreated on next call
            _local.connection = None
            if attempt == attempts:
                logger.error(
                    "Failed to publish %s after %d attempts, dropped: %s",
                    routing_key, attempts, body,
                )
    return False
