"""Defines the contract for RabbitMQ connections."""

from __future__ import annotations

from abc import ABC, abstractmethod
from types import TracebackType
from typing import Optional, Type

from pika.adapters.blocking_connection import BlockingChannel


class IRabbitMQConnection(ABC):
    """Represents a RabbitMQ connection capable of producing blocking channels.

    The channel returned by :meth:`connect` is driven by a single thread at a
    time; other threads reach it through
    ``channel.connection.add_callback_threadsafe``.
    """

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether both the connection and its channel are currently open."""

    @abstractmethod
    def connect(self) -> BlockingChannel:
        """Return an open blocking channel, reconnecting if the previous one dropped."""

    @abstractmethod
    def close(self) -> None:
        """Close the connection and associated resources."""

    @abstractmethod
    def __enter__(self) -> IRabbitMQConnection:
        """Enter a managed connection context."""

    @abstractmethod
    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        """Exit a managed connection context."""
