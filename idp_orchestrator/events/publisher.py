"""RabbitMQ publishers for workflow status and audit events."""
from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import pika
from pika.adapters.blocking_connection import BlockingChannel
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import AppConfig
from .models import AUDIT_ROUTING_KEY

LOGGER = logging.getLogger(__name__)

BROKER_ERRORS = (pika.exceptions.AMQPConnectionError, pika.exceptions.AMQPChannelError)


class RabbitMQPublisher:
    """Publish persistent JSON messages to the provisioning topic exchange.

    A single blocking connection is shared behind a lock and reopened on
    demand. Broker failures are retried with backoff and then propagate.
    """

    def __init__(self, config: AppConfig) -> None:
        self._settings = config.rabbitmq
        self._parameters = pika.URLParameters(self._settings.url)
        self._lock = threading.Lock()
        self._connection: Optional[pika.BlockingConnection] = None
        self._channel: Optional[BlockingChannel] = None

    def publish(
        self,
        routing_key: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, Any]] = None,
    ) -> None:
        body = json.dumps(payload, default=str).encode("utf-8")
        properties = pika.BasicProperties(
            content_type="application/json",
            delivery_mode=2,
            message_id=uuid.uuid4().hex,
            timestamp=int(time.time()),
            headers=headers or {},
        )
        retrying = Retrying(
            retry=retry_if_exception_type(BROKER_ERRORS),
            stop=stop_after_attempt(self._settings.publish_attempts),
            wait=wait_exponential(multiplier=0.2, max=2),
            before_sleep=self._drop_connection,
            reraise=True,
        )
        with self._lock:
            try:
                retrying(self._basic_publish, routing_key, body, properties)
            except Exception:
                LOGGER.exception("Failed to publish event", extra={"routing_key": routing_key})
                self._drop_connection()
                raise
        LOGGER.debug(
            "Published event",
            extra={"routing_key": routing_key, "message_id": properties.message_id},
        )

    def close(self) -> None:
        with self._lock:
            self._drop_connection()

    def _basic_publish(self, routing_key: str, body: bytes, properties: pika.BasicProperties) -> None:
        if self._channel is None or not self._channel.is_open:
            if self._connection is None or not self._connection.is_open:
                self._connection = pika.BlockingConnection(self._parameters)
            self._channel = self._connection.channel()
        self._channel.basic_publish(
            exchange=self._settings.exchange,
            routing_key=routing_key,
            body=body,
            properties=properties,
        )

    def _drop_connection(self, retry_state: Optional[RetryCallState] = None) -> None:
        if retry_state is not None and retry_state.outcome is not None:
            LOGGER.warning(
                "Broker publish failed, reconnecting",
                extra={"attempt": retry_state.attempt_number, "error": str(retry_state.outcome.exception())},
            )
        connection, self._connection, self._channel = self._connection, None, None
        if connection is not None and connection.is_open:
            try:
                connection.close()
            except BROKER_ERRORS:
                LOGGER.debug("Broker connection already gone")


class AuditEventPublisher:
    """Structured audit trail of workflow outcomes for centralized compliance logging.

    Audit delivery never fails the operation being audited.
    """

    def __init__(
        self,
        publisher: RabbitMQPublisher,
        service_name: str = "idp-provisioning-service",
        routing_key: str = AUDIT_ROUTING_KEY,
    ) -> None:
        self._publisher = publisher
        self._service_name = service_name
        self._routing_key = routing_key

    def publish(
        self,
        workflow_id: str,
        action: str,
        outcome: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = {
            "eventId": uuid.uuid4().hex,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": self._service_name,
            "workflowId": workflow_id,
            "action": action,
            "outcome": outcome,
            "details": details or {},
        }
        try:
            self._publisher.publish(self._routing_key, event)
        except Exception:
            LOGGER.exception(
                "Failed to publish audit event",
                extra={"workflow_id": workflow_id, "action": action, "outcome": outcome},
            )


__all__ = ["RabbitMQPublisher", "AuditEventPublisher", "BROKER_ERRORS"]
