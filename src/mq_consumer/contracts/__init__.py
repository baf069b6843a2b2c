"""Contract interfaces for mq consumers."""

from .consumer_interface import IConsumer
from .delivery_source_interface import IDelivery, IDeliverySource, ISubscription
from .rabbitmq_connection_interface import IRabbitMQConnection

__all__ = [
    "IConsumer",
    "IDelivery",
    "IDeliverySource",
    "IRabbitMQConnection",
    "ISubscription",
]
