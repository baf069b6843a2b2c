"""Provides queue subscription parameters for RabbitMQ consumers."""

from dataclasses import dataclass


@dataclass(frozen=True)
class QueueConfig:
    """Identifies the queue a consumer subscribes to.

    The queue must already exist; consumers never declare or bind it. Leave
    ``prefetch_count`` at ``0`` to skip ``basic_qos`` and keep the broker's
    default delivery window. An empty ``consumer_tag`` lets the broker pick one.
    """

    queue_name: str
    prefetch_count: int = 0
    consumer_tag: str = ""

    def __post_init__(self) -> None:
        if not self.queue_name:
            raise ValueError("queue_name must not be empty")
        if self.prefetch_count < 0:
            raise ValueError("prefetch_count must be zero or positive")
