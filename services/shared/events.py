"""
Domain events: order.created, order.cancelled, payment.completed, payment.refunded.

Events are published after the state change has committed, so publishing is
best effort from the request path (``safe=True``). The transport is chosen by
EVENT_BACKEND: rabbitmq (topic exchange, routing key = event type), sqs, or
none.
"""

import os
import json
import logging
from decimal import Decimal
from typing import Any, Callable, Dict

EXCHANGE = os.getenv("EVENT_EXCHANGE", "shop.events")

logger = logging.getLogger(__name__)

# Reuse AWS client across invocations (Lambda-friendly)
_sqs_client = None


def _encode(event_type: str, payload: Dict[str, Any]) -> str:
    # money travels as a string so amounts survive exactly
    return json.dumps(
        {"type": event_type, "payload": payload},
        default=lambda v: str(v) if isinstance(v, Decimal) else repr(v),
    )


def _send_rabbitmq(event_type: str, body: str) -> None:
    import pika

    url = os.getenv("RABBITMQ_URL")
    if not url:
        raise RuntimeError("RABBITMQ_URL is not set")

    params = pika.URLParameters(url)
    # don't hang a request on a broker that is down
    params.blocked_connection_timeout = 5

    conn = pika.BlockingConnection(params)
    try:
        ch = conn.channel()
        ch.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)
        ch.basic_publish(
            exchange=EXCHANGE,
            routing_key=event_type,
            body=body.encode("utf-8"),
            properties=pika.BasicProperties(content_type="application/json", delivery_mode=2),
        )
    finally:
        if conn.is_open:
            conn.close()


def _send_sqs(event_type: str, body: str) -> None:
    global _sqs_client
    import boto3

    queue_url = os.getenv("SQS_QUEUE_URL")
    if not queue_url:
        raise RuntimeError("SQS_QUEUE_URL is not set")

    if _sqs_client is None:
        _sqs_client = boto3.client("sqs")

    _sqs_client.send_message(
        QueueUrl=queue_url,
        MessageBody=body,
        MessageAttributes={"type": {"DataType": "String", "StringValue": event_type}},
    )


BACKENDS: Dict[str, Callable[[str, str], None]] = {
    "rabbitmq": _send_rabbitmq,
    "sqs": _send_sqs,
    "none": lambda event_type, body: None,
}


def publish(event_type: str, payload: Dict[str, Any], *, safe: bool = False) -> None:
    """
    Publish one event on the configured backend.

    safe=True logs a failed publish and returns; the caller's state change
    has already committed and must not be reported as failed.
    """
    backend = os.getenv("EVENT_BACKEND", "rabbitmq").strip().lower()

    try:
        send = BACKENDS.get(backend)
        if send is None:
            raise RuntimeError(f"Unsupported EVENT_BACKEND={backend}")
        send(event_type, _encode(event_type, payload))
        logger.debug("event %s published via %s", event_type, backend)
    except Exception:
        if not safe:
            raise
        logger.exception("event publish failed: %s", event_type)
