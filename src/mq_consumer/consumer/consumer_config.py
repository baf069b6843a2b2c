"""Configuration primitives for wiring a `Consumer`."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional

from mq_consumer.connection import RabbitMQConnection
from mq_consumer.consumer_options import ConsumerOptions
from mq_consumer.contracts import IDeliverySource, IRabbitMQConnection
from mq_consumer.delivery_source import RabbitMQDeliverySource


@dataclass(frozen=True)
class ConsumerDependencies:
    """Bundles factory functions and defaults for consumer wiring."""

    options: ConsumerOptions = field(default_factory=ConsumerOptions)
    make_connection: Callable[[Optional[str]], IRabbitMQConnection] = field(
        default=lambda rabbitmq_url: RabbitMQConnection(rabbitmq_url)
    )
    make_delivery_source: Callable[[IRabbitMQConnection], IDeliverySource] = field(
        default=lambda connection: RabbitMQDeliverySource(connection)
    )
