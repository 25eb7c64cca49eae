"""Confirm-tracked RabbitMQ publisher for POS events."""

from __future__ import annotations

import json
import logging
import socket
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from threading import Lock
from typing import Any, Callable, Dict, Mapping, Optional

import pika
from pika.exceptions import (
    AMQPChannelError,
    AMQPConnectionError,
    NackError,
    StreamLostError,
    UnroutableError,
)

logger = logging.getLogger(__name__)

DEFAULT_EXCHANGE = "pos.events"


class PublishError(Exception):
    """Base class for publisher failures."""


class BrokerUnavailableError(PublishError):
    """Raised when no usable channel exists (connect failed or connection lost)."""


@dataclass(frozen=True)
class OutboundMessage:
    event_type: str
    routing_key: str
    body: Mapping[str, Any]
    message_id: str
    timestamp: datetime
    source: str
    venue_id: str

    def envelope(self) -> Dict[str, Any]:
        payload = dict(self.body)
        payload["_metadata"] = {
            "source": self.source,
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
            "eventType": self.event_type,
            "messageId": self.message_id,
            "venueId": self.venue_id,
        }
        return payload


@dataclass(frozen=True)
class PublishResult:
    ok: bool
    message_id: str
    error: Optional[str] = None


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def dead_letter_exchange(exchange: str) -> str:
    return f"{exchange}.dlx"


def dead_letter_queue(queue: str) -> str:
    return f"{queue}.dead"


class EventPublisher:
    """Owns the broker connection, its topology and a single confirm channel.

    All publishes are serialized through one lock so broker confirms resolve in
    publish order. Initialization is lazy: the first publish connects and
    declares topology, and fails closed when that is not possible.
    """

    def __init__(
        self,
        url: str,
        *,
        queues: Mapping[str, str],
        venue_id: str,
        exchange: str = DEFAULT_EXCHANGE,
        source: Optional[str] = None,
        connection_factory: Optional[Callable[[], Any]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._url = url
        self._queues = dict(queues)
        self._venue_id = venue_id
        self._exchange = exchange
        self._dlx = dead_letter_exchange(exchange)
        self._source = source or f"POS-{socket.gethostname()}"
        self._connection_factory = connection_factory or self._default_connection
        self._clock = clock
        self._lock = Lock()
        self._connection: Any = None
        self._channel: Any = None

    @property
    def ready(self) -> bool:
        return self._channel is not None and getattr(self._channel, "is_open", True)

    @property
    def exchange(self) -> str:
        return self._exchange

    def _default_connection(self):
        return pika.BlockingConnection(pika.URLParameters(self._url))

    def initialize(self) -> None:
        """Connect, enable confirms and declare topology; raise when unreachable."""
        with self._lock:
            self._initialize_locked()

    def _initialize_locked(self) -> None:
        if self.ready:
            return
        self._reset_locked()
        connection = None
        try:
            connection = self._connection_factory()
            channel = connection.channel()
            channel.confirm_delivery()
            self._declare_topology(channel)
        except (AMQPConnectionError, AMQPChannelError, OSError) as exc:
            self._connection = connection
            self._reset_locked()
            raise BrokerUnavailableError(f"broker initialization failed: {exc}") from exc
        self._connection = connection
        self._channel = channel
        logger.info(
            "publisher ready on exchange %s (%d queues)", self._exchange, len(self._queues)
        )

    def _declare_topology(self, channel) -> None:
        channel.exchange_declare(
            exchange=self._exchange, exchange_type="direct", durable=True
        )
        channel.exchange_declare(exchange=self._dlx, exchange_type="direct", durable=True)
        for queue in self._queues.values():
            dead = dead_letter_queue(queue)
            channel.queue_declare(
                queue=queue,
                durable=True,
                arguments={
                    "x-dead-letter-exchange": self._dlx,
                    "x-dead-letter-routing-key": dead,
                },
            )
            channel.queue_bind(queue=queue, exchange=self._exchange, routing_key=queue)
            channel.queue_declare(queue=dead, durable=True)
            channel.queue_bind(queue=dead, exchange=self._dlx, routing_key=dead)
            logger.debug("declared queue %s with dead-letter queue %s", queue, dead)

    def build_message(self, event_type: str, body: Mapping[str, Any]) -> OutboundMessage:
        try:
            routing_key = self._queues[event_type]
        except KeyError:
            raise PublishError(f"no queue configured for event type {event_type}") from None
        now = self._clock()
        message_id = f"{self._venue_id}-{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:9]}"
        return OutboundMessage(
            event_type=event_type,
            routing_key=routing_key,
            body=body,
            message_id=message_id,
            timestamp=now,
            source=self._source,
            venue_id=self._venue_id,
        )

    def publish(self, event_type: str, body: Mapping[str, Any]) -> PublishResult:
        """Publish one message and wait for the broker confirm.

        Returns a failed result for nacks, unroutable returns and failed lazy
        initialization; raises :class:`BrokerUnavailableError` only when an
        established connection is lost during the publish.
        """
        message = self.build_message(event_type, body)
        encoded = json.dumps(message.envelope(), default=_json_default).encode("utf-8")
        properties = pika.BasicProperties(
            content_type="application/json",
            delivery_mode=2,
            message_id=message.message_id,
            timestamp=int(message.timestamp.timestamp()),
            headers={"x-venue-id": self._venue_id},
        )
        with self._lock:
            if not self.ready:
                try:
                    self._initialize_locked()
                except BrokerUnavailableError as exc:
                    logger.error("publish of %s skipped: %s", message.message_id, exc)
                    return PublishResult(False, message.message_id, str(exc))
            try:
                self._channel.basic_publish(
                    exchange=self._exchange,
                    routing_key=message.routing_key,
                    body=encoded,
                    properties=properties,
                    mandatory=True,
                )
            except NackError as exc:
                logger.warning("broker nacked message %s", message.message_id)
                return PublishResult(False, message.message_id, f"broker nack: {exc}")
            except UnroutableError as exc:
                logger.warning("message %s was unroutable", message.message_id)
                return PublishResult(False, message.message_id, f"unroutable: {exc}")
            except (AMQPConnectionError, AMQPChannelError, StreamLostError) as exc:
                self._reset_locked()
                raise BrokerUnavailableError(f"broker connection lost: {exc}") from exc
        logger.debug(
            "published %s to %s (%s)", event_type, message.routing_key, message.message_id
        )
        return PublishResult(True, message.message_id)

    def keepalive(self) -> None:
        """Service heartbeats on an idle blocking connection."""
        with self._lock:
            if self._connection is None:
                return
            try:
                self._connection.process_data_events(time_limit=0)
            except (AMQPConnectionError, AMQPChannelError, StreamLostError) as exc:
                logger.warning("broker connection dropped while idle: %s", exc)
                self._reset_locked()

    def close(self) -> None:
        with self._lock:
            self._reset_locked()

    def _reset_locked(self) -> None:
        connection, self._connection, self._channel = self._connection, None, None
        if connection is None:
            return
        try:
            if getattr(connection, "is_open", False):
                connection.close()
        except (AMQPConnectionError, AMQPChannelError, StreamLostError, OSError) as exc:
            logger.debug("ignoring error while closing broker connection: %s", exc)


__all__ = [
    "BrokerUnavailableError",
    "DEFAULT_EXCHANGE",
    "EventPublisher",
    "OutboundMessage",
    "PublishError",
    "PublishResult",
    "dead_letter_exchange",
    "dead_letter_queue",
]
