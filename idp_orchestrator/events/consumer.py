"""RabbitMQ consumer for provisioning command events."""
from __future__ import annotations

import json
import logging
import threading
from typing import Callable, Optional

import pika
from pika.adapters.blocking_connection import BlockingChannel
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_when_event_set, wait_exponential

from ..config import AppConfig
from .models import EventType, ProvisioningEvent

LOGGER = logging.getLogger(__name__)

EventHandler = Callable[[ProvisioningEvent], None]

# Seconds spent in one process_data_events call before the stop flag is checked.
POLL_TIME_LIMIT = 1.0


def parse_event(
    body: bytes, headers: Optional[dict] = None, routing_key: Optional[str] = None
) -> ProvisioningEvent:
    """Decode a command message.

    The event type comes from the body ``type`` field, the ``x-event-type``
    header or the routing key, in that order. Raises ``ValueError`` for
    anything that is not a JSON object naming a known event type.
    """

    headers = headers or {}
    payload = json.loads(body.decode("utf-8")) if body else {}
    if not isinstance(payload, dict):
        raise ValueError("Event body must be a JSON object")
    event_type = payload.get("type") or headers.get("x-event-type") or routing_key
    if not event_type:
        raise ValueError("Received message without event type")
    try:
        event_enum = EventType(event_type)
    except ValueError as exc:
        raise ValueError(f"Unsupported event type: {event_type}") from exc
    data = payload.get("data")
    if not isinstance(data, dict):
        data = {key: value for key, value in payload.items() if key != "type"}
    workflow_id = payload.get("workflowId") or payload.get("workflow_id") or data.get("workflowId")
    return ProvisioningEvent(
        type=event_enum,
        payload=data,
        workflow_id=str(workflow_id) if workflow_id else None,
        message_id=headers.get("x-message-id"),
    )


class EventConsumer:
    """Consume provisioning commands on a daemon thread.

    Messages are acknowledged once the handler returns. Malformed messages
    and handler failures are rejected without requeue so a poison message
    cannot wedge the queue.
    """

    def __init__(self, config: AppConfig, handler: EventHandler) -> None:
        self._settings = config.rabbitmq
        self._bindings = list(config.event_bindings)
        self._handler = handler
        self._connection: Optional[pika.BlockingConnection] = None
        self._channel: Optional[BlockingChannel] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            LOGGER.debug("Event consumer already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="event-consumer", daemon=True)
        self._thread.start()
        LOGGER.info("Event consumer thread started", extra={"queue": self._settings.queue})

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        LOGGER.info("Event consumer thread stopped")

    def _run(self) -> None:
        retrying = Retrying(
            retry=retry_if_exception_type(pika.exceptions.AMQPError),
            stop=stop_when_event_set(self._stop_event),
            wait=wait_exponential(multiplier=1, max=30),
            sleep=self._stop_event.wait,
            before_sleep=self._log_reconnect,
            retry_error_callback=lambda retry_state: None,
        )
        try:
            retrying(self._consume_until_stopped)
        except Exception:
            LOGGER.exception("Event consumer terminated unexpectedly")

    def _consume_until_stopped(self) -> None:
        try:
            connection = self._connect()
            while not self._stop_event.is_set():
                connection.process_data_events(time_limit=POLL_TIME_LIMIT)
        finally:
            self._cleanup()

    def _connect(self) -> pika.BlockingConnection:
        connection = pika.BlockingConnection(pika.URLParameters(self._settings.url))
        self._connection = connection
        channel = connection.channel()
        channel.basic_qos(prefetch_count=self._settings.prefetch_count)
        channel.exchange_declare(exchange=self._settings.exchange, exchange_type="topic", durable=True)
        channel.queue_declare(queue=self._settings.queue, durable=True)
        for binding in self._bindings:
            channel.queue_bind(queue=self._settings.queue, exchange=self._settings.exchange, routing_key=binding)
        channel.basic_consume(queue=self._settings.queue, on_message_callback=self._on_message)
        self._channel = channel
        LOGGER.info(
            "Connected to RabbitMQ",
            extra={"queue": self._settings.queue, "bindings": self._bindings},
        )
        return connection

    def _on_message(
        self,
        channel: BlockingChannel,
        method: pika.spec.Basic.Deliver,
        properties: pika.BasicProperties,
        body: bytes,
    ) -> None:
        try:
            event = parse_event(body, properties.headers if properties else None, method.routing_key)
        except ValueError as exc:
            LOGGER.warning(
                "Rejecting malformed event",
                extra={"routing_key": method.routing_key, "error": str(exc)},
            )
            channel.basic_reject(method.delivery_tag, requeue=False)
            return
        LOGGER.debug(
            "Parsed provisioning event",
            extra={"event_type": event.type.value, "workflow_id": event.workflow_id},
        )
        try:
            self._handler(event)
        except Exception:
            LOGGER.exception(
                "Failed to process event",
                extra={"event_type": event.type.value, "workflow_id": event.workflow_id},
            )
            channel.basic_nack(method.delivery_tag, requeue=False)
            return
        channel.basic_ack(method.delivery_tag)

    def _log_reconnect(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        LOGGER.error(
            "RabbitMQ connection lost, reconnecting",
            extra={"attempt": retry_state.attempt_number, "error": str(error)},
        )

    def _cleanup(self) -> None:
        channel, self._channel = self._channel, None
        connection, self._connection = self._connection, None
        try:
            if channel is not None and channel.is_open:
                channel.close()
            if connection is not None and connection.is_open:
                connection.close()
        except pika.exceptions.AMQPError:
            LOGGER.debug("Broker connection already closed")


__all__ = ["EventConsumer", "EventHandler", "parse_event"]
