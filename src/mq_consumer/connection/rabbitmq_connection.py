"""RabbitMQ connection management."""

from __future__ import annotations

import logging
import os
import threading
from types import TracebackType
from typing import Optional, Type

import pika
from pika.adapters.blocking_connection import BlockingChannel, BlockingConnection
from pika.connection import Parameters

from mq_consumer.contracts import IRabbitMQConnection


class RabbitMQConnection(IRabbitMQConnection):
    """Manages lifecycle of a blocking RabbitMQ connection.

    One instance backs one consumer: the delivery source drives the connection
    from its pump thread, so sharing it between consumers is not supported.
    """

    def __init__(
        self,
        rabbitmq_url: Optional[str] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        url = (rabbitmq_url or os.getenv("RABBITMQ_URL") or "").strip()
        if not url:
            raise ValueError(
                "RabbitMQ URL must be provided via argument or RABBITMQ_URL environment variable."
            )

        try:
            self._parameters: Parameters = pika.URLParameters(url)
        except ValueError as exc:
            raise ValueError(f"Invalid RabbitMQ URL provided: {url}") from exc

        self.rabbitmq_url = url
        self.connection: Optional[BlockingConnection] = None
        self.channel: Optional[BlockingChannel] = None
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return bool(
            self.connection is not None
            and not self.connection.is_closed
            and self.channel is not None
            and not self.channel.is_closed
        )

    def connect(self) -> BlockingChannel:
        with self._lock:
            if self.connection is None or self.connection.is_closed:
                self.logger.info("Connecting to RabbitMQ at %s", self._safe_url())
                try:
                    self.connection = pika.BlockingConnection(self._parameters)
                except pika.exceptions.AMQPConnectionError as exc:
                    self.logger.error("Failed to establish RabbitMQ connection: %s", exc)
                    raise

                self.channel = self.connection.channel()
                self.logger.info("Connected to RabbitMQ.")

            if self.channel is None or self.channel.is_closed:
                self.logger.debug("Re-opening channel for RabbitMQ connection.")
                self.channel = self.connection.channel()

            return self.channel

    def close(self) -> None:
        with self._lock:
            if self.channel and not self.channel.is_closed:
                try:
                    self.channel.close()
                    self.logger.info("Closed RabbitMQ channel.")
                except pika.exceptions.AMQPError as exc:
                    self.logger.warning("Failed to close RabbitMQ channel: %s", exc)

            if self.connection and not self.connection.is_closed:
                try:
                    self.connection.close()
                    self.logger.info("Closed RabbitMQ connection.")
                except pika.exceptions.AMQPError as exc:
                    self.logger.warning("Failed to close RabbitMQ connection: %s", exc)

    def _safe_url(self) -> str:
        # Credentials stay out of the logs.
        host = self._parameters.host
        port = self._parameters.port
        vhost = self._parameters.virtual_host
        return f"amqp://{host}:{port}/{vhost.lstrip('/')}"

    def __enter__(self) -> RabbitMQConnection:
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        self.close()
