"""Worker-pool consumer for RabbitMQ queues."""

from .consumer import Consumer, MessageHandler
from .consumer_config import ConsumerDependencies

__all__ = [
    "Consumer",
    "ConsumerDependencies",
    "MessageHandler",
]
