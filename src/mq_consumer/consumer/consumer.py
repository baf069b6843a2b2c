import logging
import threading
import time
from typing import Callable, List, Optional

from mq_consumer.consumer_options import ConsumerOptions
from mq_consumer.contracts import (
    IConsumer,
    IDelivery,
    IDeliverySource,
    IRabbitMQConnection,
    ISubscription,
)
from mq_consumer.errors import AckError, RejectError
from mq_consumer.queue_config import QueueConfig

from .consumer_config import ConsumerDependencies

MessageHandler = Callable[[bytes], None]


class Consumer(IConsumer):
    """Dispatches deliveries from one queue to a handler across a pool of worker threads.

    Each call to :meth:`start` launches a generation of ``options.workers``
    threads sharing one subscription and one force-stop event. A generation
    ends when the caller's cancellation event is set or when :meth:`reconnect`
    or :meth:`stop` force-stops it. ``start``, ``reconnect`` and ``stop`` must
    be called from one thread at a time.
    """

    def __init__(
        self,
        *,
        delivery_source: IDeliverySource,
        queue_config: QueueConfig,
        handler: MessageHandler,
        options: Optional[ConsumerOptions] = None,
        connection: Optional[IRabbitMQConnection] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.delivery_source = delivery_source
        self.connection = connection
        self.queue_config = queue_config
        self.handler = handler
        self.options = options or ConsumerOptions()

        self._subscription: Optional[ISubscription] = None
        self._stop_event: Optional[threading.Event] = None
        self._workers: List[threading.Thread] = []

    @classmethod
    def from_url(
        cls,
        handler: MessageHandler,
        queue_config: QueueConfig,
        rabbitmq_url: Optional[str] = None,
        *,
        options: Optional[ConsumerOptions] = None,
        dependencies: Optional[ConsumerDependencies] = None,
    ) -> "Consumer":
        deps = dependencies or ConsumerDependencies()
        connection = deps.make_connection(rabbitmq_url)

        return cls(
            delivery_source=deps.make_delivery_source(connection),
            queue_config=queue_config,
            handler=handler,
            options=options or deps.options,
            connection=connection,
        )

    @property
    def queue_name(self) -> str:
        return self.queue_config.queue_name

    @property
    def running(self) -> bool:
        subscription = self._subscription
        if subscription is None or not subscription.active:
            return False
        return any(worker.is_alive() for worker in self._workers)

    def start(self, cancel_event: threading.Event) -> None:
        """Open the subscription and launch ``options.workers`` worker threads.

        Raises ``ConnectionFailure`` when the subscription cannot be opened, in
        which case no worker is launched. Returns as soon as the workers run.
        """
        stop_event = threading.Event()
        self._stop_event = stop_event

        subscription = self.delivery_source.open(self.queue_config)
        self._subscription = subscription

        self._workers = [
            threading.Thread(
                target=self._consume,
                args=(subscription, cancel_event, stop_event),
                name=f"mq-worker-{self.queue_name}-{number}",
                daemon=True,
            )
            for number in range(1, self.options.workers + 1)
        ]
        for worker in self._workers:
            worker.start()

        self.logger.info(
            "Started %d MQ consumer workers for queue %s", self.options.workers, self.queue_name
        )

    def reconnect(self, cancel_event: threading.Event) -> None:
        """Force-stop the running generation and start a new one.

        The previous workers have all exited before the new subscription is
        opened. If opening it fails the consumer stays stopped and the
        ``ConnectionFailure`` propagates.
        """
        self.logger.info("Reconnecting consumer for queue %s", self.queue_name)
        self._shutdown_generation(timeout=None)
        self.start(cancel_event)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Force-stop the running generation and close the owned connection, if any."""
        self._shutdown_generation(timeout=timeout)
        if self.connection is not None:
            self.connection.close()
        self.logger.info("Stopped consumer for queue %s", self.queue_name)

    def _shutdown_generation(self, timeout: Optional[float]) -> None:
        subscription, self._subscription = self._subscription, None
        workers, self._workers = self._workers, []

        if self._stop_event is not None:
            self._stop_event.set()

        current = threading.current_thread()
        for worker in workers:
            if worker is current:
                continue
            worker.join(timeout)
            if worker.is_alive():
                self.logger.warning(
                    "Worker %s for queue %s did not stop within %s seconds",
                    worker.name,
                    self.queue_name,
                    timeout,
                )

        if subscription is not None:
            subscription.close()

    def _consume(
        self,
        subscription: ISubscription,
        cancel_event: threading.Event,
        stop_event: threading.Event,
    ) -> None:
        while True:
            if cancel_event.is_set():
                self.logger.info("Finished consuming queue %s", self.queue_name)
                return
            if stop_event.is_set():
                self.logger.info("Force stopped consuming queue %s", self.queue_name)
                return

            delivery = subscription.get(timeout=self.options.poll_interval)
            if delivery is None:
                continue

            self._dispatch(delivery)

    def _dispatch(self, delivery: IDelivery) -> None:
        body = delivery.body
        if not body:
            self.logger.debug("Skipping empty delivery from queue %s", self.queue_name)
            return

        try:
            self.handler(body)
        except Exception as exc:
            self.logger.error(
                "Handler failed for queue %s (redelivered=%s): %s",
                self.queue_name,
                delivery.redelivered,
                exc,
                exc_info=exc,
            )

            if self.options.retry_on_error:
                time.sleep(self.options.retry_delay)
                try:
                    delivery.reject(requeue=True)
                except RejectError as reject_exc:
                    self.logger.error("%s", reject_exc)
                return

        try:
            delivery.ack()
        except AckError as exc:
            self.logger.error("%s", exc)
