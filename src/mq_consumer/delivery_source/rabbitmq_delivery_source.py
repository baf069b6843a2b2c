"""RabbitMQ implementation of the delivery source.

pika channels are not thread-safe, so each subscription owns a pump thread
that is the only thread touching the channel once consuming has started.
Deliveries are handed to worker threads through a local queue and their
acks/rejects are marshalled back onto the pump thread with
``add_callback_threadsafe``.
"""

from __future__ import annotations

import functools
import logging
import queue
import threading
from concurrent import futures
from typing import Any, Callable, Optional, Set

import pika
from pika.adapters.blocking_connection import BlockingChannel

from mq_consumer.contracts import IDelivery, IDeliverySource, IRabbitMQConnection, ISubscription
from mq_consumer.errors import AckError, ConnectionFailure, RejectError
from mq_consumer.queue_config import QueueConfig


class RabbitMQDelivery(IDelivery):
    """A delivery whose settlement runs on the owning subscription's pump thread."""

    def __init__(
        self,
        subscription: RabbitMQSubscription,
        *,
        delivery_tag: int,
        body: Optional[bytes],
        redelivered: bool = False,
    ) -> None:
        self._subscription = subscription
        self.delivery_tag = delivery_tag
        self._redelivered = redelivered
        self._body = body

    @property
    def body(self) -> Optional[bytes]:
        return self._body

    @property
    def redelivered(self) -> bool:
        return self._redelivered

    def ack(self) -> None:
        try:
            self._subscription.execute(
                functools.partial(
                    self._subscription.channel.basic_ack,
                    delivery_tag=self.delivery_tag,
                    multiple=False,
                )
            )
        except (pika.exceptions.AMQPError, futures.TimeoutError) as exc:
            raise AckError(
                f"Failed to ack delivery {self.delivery_tag} "
                f"from queue {self._subscription.queue_name}: {exc!r}"
            ) from exc

    def reject(self, requeue: bool) -> None:
        try:
            self._subscription.execute(
                functools.partial(
                    self._subscription.channel.basic_reject,
                    delivery_tag=self.delivery_tag,
                    requeue=requeue,
                )
            )
        except (pika.exceptions.AMQPError, futures.TimeoutError) as exc:
            raise RejectError(
                f"Failed to reject delivery {self.delivery_tag} "
                f"from queue {self._subscription.queue_name}: {exc!r}"
            ) from exc


class RabbitMQSubscription(ISubscription):
    """A basic.consume registration plus the thread that services it."""

    def __init__(
        self,
        channel: BlockingChannel,
        queue_config: QueueConfig,
        *,
        ack_timeout: float,
        pump_interval: float,
        logger: logging.Logger,
    ) -> None:
        self.channel = channel
        self.queue_config = queue_config
        self.consumer_tag: Optional[str] = None
        self.logger = logger
        self._ack_timeout = ack_timeout
        self._pump_interval = pump_interval
        self._deliveries: "queue.Queue[RabbitMQDelivery]" = queue.Queue()
        self._closing = threading.Event()
        self._lost = threading.Event()
        self._pump: Optional[threading.Thread] = None
        # Callbacks handed to the pump thread and not yet run by it.
        self._pending: Set["futures.Future[None]"] = set()
        self._pending_lock = threading.Lock()
        self._pump_exited = False

    @property
    def queue_name(self) -> str:
        return self.queue_config.queue_name

    @property
    def active(self) -> bool:
        return (
            self._pump is not None
            and self._pump.is_alive()
            and not self._closing.is_set()
            and not self._lost.is_set()
        )

    def start(self) -> None:
        self.consumer_tag = self.channel.basic_consume(
            queue=self.queue_name,
            on_message_callback=self._on_message,
            auto_ack=False,
            exclusive=False,
            consumer_tag=self.queue_config.consumer_tag or None,
            arguments=None,
        )
        self.channel.add_on_cancel_callback(self._on_broker_cancel)

        self._pump = threading.Thread(
            target=self._run,
            name=f"mq-pump-{self.queue_name}",
            daemon=True,
        )
        self._pump.start()
        self.logger.debug(
            "Subscribed to queue %s with consumer tag %s", self.queue_name, self.consumer_tag
        )

    def get(self, timeout: float) -> Optional[RabbitMQDelivery]:
        try:
            return self._deliveries.get(timeout=timeout)
        except queue.Empty:
            return None

    def execute(self, callback: Callable[[], Any]) -> None:
        """Run ``callback`` on the pump thread and wait for it to finish.

        Raises ``ChannelWrongStateError`` when the subscription is inactive or
        the pump thread exits before running the callback.
        """
        future: "futures.Future[None]" = futures.Future()

        def run() -> None:
            with self._pending_lock:
                self._pending.discard(future)
            if not future.set_running_or_notify_cancel():
                return
            if self._closing.is_set() or self._lost.is_set():
                future.set_exception(self._inactive_error())
                return
            try:
                callback()
            except Exception as exc:
                future.set_exception(exc)
            else:
                future.set_result(None)

        with self._pending_lock:
            if self._pump_exited or not self.active:
                raise self._inactive_error()
            self._pending.add(future)

        self.channel.connection.add_callback_threadsafe(run)
        try:
            future.result(timeout=self._ack_timeout)
        except futures.TimeoutError:
            future.cancel()
            with self._pending_lock:
                self._pending.discard(future)
            raise

    def close(self) -> None:
        if self._closing.is_set():
            return
        self._closing.set()

        if self._pump is not None and self._pump is not threading.current_thread():
            self._pump.join()

        dropped = self._discard_buffered()
        if dropped:
            self.logger.info(
                "Discarded %d unprocessed deliveries from queue %s; the broker will redeliver them",
                dropped,
                self.queue_name,
            )

    def _on_message(
        self,
        channel: BlockingChannel,
        method: pika.spec.Basic.Deliver,
        properties: pika.spec.BasicProperties,
        body: bytes,
    ) -> None:
        self._deliveries.put(
            RabbitMQDelivery(
                self,
                delivery_tag=method.delivery_tag,
                body=body,
                redelivered=bool(method.redelivered),
            )
        )

    def _on_broker_cancel(self, method_frame: Any) -> None:
        self.logger.warning("Broker cancelled consumer for queue %s", self.queue_name)
        self._lost.set()

    def _run(self) -> None:
        connection = self.channel.connection
        try:
            while not self._closing.is_set() and not self._lost.is_set():
                connection.process_data_events(time_limit=self._pump_interval)
        except pika.exceptions.AMQPError as exc:
            self._lost.set()
            self.logger.error(
                "Lost connection while consuming queue %s: %r", self.queue_name, exc
            )
        else:
            self._teardown()
        finally:
            self._fail_pending()

    def _inactive_error(self) -> pika.exceptions.ChannelWrongStateError:
        return pika.exceptions.ChannelWrongStateError(
            f"Subscription for queue {self.queue_name} is not active"
        )

    def _fail_pending(self) -> None:
        with self._pending_lock:
            self._pump_exited = True
            pending, self._pending = self._pending, set()
        for future in pending:
            if future.set_running_or_notify_cancel():
                future.set_exception(self._inactive_error())

    def _teardown(self) -> None:
        try:
            if self.channel.is_open:
                if self.consumer_tag and not self._lost.is_set():
                    self.channel.basic_cancel(self.consumer_tag)
                # Closing the channel hands unacked deliveries back to the broker.
                self.channel.close()
        except pika.exceptions.AMQPError as exc:
            self.logger.warning(
                "Failed to cancel subscription on queue %s: %r", self.queue_name, exc
            )

    def _discard_buffered(self) -> int:
        dropped = 0
        while True:
            try:
                self._deliveries.get_nowait()
            except queue.Empty:
                return dropped
            dropped += 1


class RabbitMQDeliverySource(IDeliverySource):
    """Opens manual-ack subscriptions on a RabbitMQ connection."""

    DEFAULT_ACK_TIMEOUT = 10.0
    DEFAULT_PUMP_INTERVAL = 0.1

    def __init__(
        self,
        connection: IRabbitMQConnection,
        *,
        ack_timeout: float = DEFAULT_ACK_TIMEOUT,
        pump_interval: float = DEFAULT_PUMP_INTERVAL,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if ack_timeout <= 0:
            raise ValueError("ack_timeout must be positive")
        if pump_interval <= 0:
            raise ValueError("pump_interval must be positive")

        self.connection = connection
        self.ack_timeout = ack_timeout
        self.pump_interval = pump_interval
        self.logger = logger or logging.getLogger(__name__)

    def open(self, queue_config: QueueConfig) -> RabbitMQSubscription:
        queue_name = queue_config.queue_name
        if not self.connection.is_open:
            self.logger.debug("Connection for queue %s is not open; connecting", queue_name)
        try:
            channel = self.connection.connect()
            if queue_config.prefetch_count > 0:
                channel.basic_qos(prefetch_count=queue_config.prefetch_count)

            subscription = RabbitMQSubscription(
                channel,
                queue_config,
                ack_timeout=self.ack_timeout,
                pump_interval=self.pump_interval,
                logger=self.logger,
            )
            subscription.start()
        except pika.exceptions.AMQPError as exc:
            self.logger.error("Failed to subscribe to queue %s: %r", queue_name, exc)
            raise ConnectionFailure(queue_name, repr(exc)) from exc

        return subscription
