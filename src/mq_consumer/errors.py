"""Exceptions raised by the consumer and its delivery source."""

from __future__ import annotations


class ConsumerError(Exception):
    """Base class for consumer errors."""


class ConnectionFailure(ConsumerError):
    """Opening a subscription on the broker failed."""

    def __init__(self, queue_name: str, reason: str) -> None:
        super().__init__(f"MQ issue {reason} for queue: {queue_name}")
        self.queue_name = queue_name
        self.reason = reason


class AckError(ConsumerError):
    """The broker did not accept an acknowledgment."""


class RejectError(ConsumerError):
    """The broker did not accept a rejection."""
