"""Messaging package providing a worker-pool RabbitMQ consumer."""

from .connection import RabbitMQConnection
from .consumer import Consumer, ConsumerDependencies, MessageHandler
from .consumer_options import ConsumerOptions
from .contracts import IConsumer, IDelivery, IDeliverySource, IRabbitMQConnection, ISubscription
from .delivery_source import RabbitMQDeliverySource
from .errors import AckError, ConnectionFailure, ConsumerError, RejectError
from .queue_config import QueueConfig

__all__ = [
    "AckError",
    "ConnectionFailure",
    "Consumer",
    "ConsumerDependencies",
    "ConsumerError",
    "ConsumerOptions",
    "IConsumer",
    "IDelivery",
    "IDeliverySource",
    "IRabbitMQConnection",
    "ISubscription",
    "MessageHandler",
    "QueueConfig",
    "RabbitMQConnection",
    "RabbitMQDeliverySource",
    "RejectError",
]
