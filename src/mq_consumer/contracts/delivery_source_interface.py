"""Defines the contract for sources of broker deliveries."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from mq_consumer.queue_config import QueueConfig


class IDelivery(ABC):
    """A single message handed out by a subscription."""

    @property
    @abstractmethod
    def body(self) -> Optional[bytes]:
        """Raw message payload."""

    @property
    @abstractmethod
    def redelivered(self) -> bool:
        """Whether the broker delivered this message before."""

    @abstractmethod
    def ack(self) -> None:
        """Permanently remove the message from the queue.

        Raises ``AckError`` when the broker call cannot be completed.
        """

    @abstractmethod
    def reject(self, requeue: bool) -> None:
        """Return the message to the queue, or discard it when ``requeue`` is false.

        Raises ``RejectError`` when the broker call cannot be completed.
        """


class ISubscription(ABC):
    """A live, shared stream of deliveries from one queue.

    Any number of threads may call :meth:`get` concurrently; each delivery is
    handed to exactly one caller.
    """

    @property
    @abstractmethod
    def active(self) -> bool:
        """Whether the subscription can still receive deliveries."""

    @abstractmethod
    def get(self, timeout: float) -> Optional[IDelivery]:
        """Wait up to ``timeout`` seconds for the next delivery, or return ``None``."""

    @abstractmethod
    def close(self) -> None:
        """Cancel the subscription. Safe to call more than once."""


class IDeliverySource(ABC):
    """Opens subscriptions on named queues."""

    @abstractmethod
    def open(self, queue_config: QueueConfig) -> ISubscription:
        """Start consuming from the queue with manual acknowledgments.

        Raises ``ConnectionFailure`` when the subscription cannot be opened.
        """
