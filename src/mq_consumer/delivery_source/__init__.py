"""Broker-backed delivery sources."""

from .rabbitmq_delivery_source import (
    RabbitMQDelivery,
    RabbitMQDeliverySource,
    RabbitMQSubscription,
)

__all__ = [
    "RabbitMQDelivery",
    "RabbitMQDeliverySource",
    "RabbitMQSubscription",
]
