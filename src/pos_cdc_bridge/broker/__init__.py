"""RabbitMQ publishing for the POS CDC bridge."""

from .publisher import (
    BrokerUnavailableError,
    EventPublisher,
    OutboundMessage,
    PublishError,
    PublishResult,
)

__all__ = [
    "BrokerUnavailableError",
    "EventPublisher",
    "OutboundMessage",
    "PublishError",
    "PublishResult",
]
