"""End-to-end consumer scenarios against an in-memory delivery source."""

import logging
import queue
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from mq_consumer import (
    ConnectionFailure,
    Consumer,
    ConsumerOptions,
    IDelivery,
    IDeliverySource,
    ISubscription,
    QueueConfig,
)


class InMemoryDelivery(IDelivery):
    def __init__(
        self, broker: "InMemoryBroker", body: Optional[bytes], tag: int, redelivered: bool = False
    ) -> None:
        self._broker = broker
        self._body = body
        self._redelivered = redelivered
        self.tag = tag

    @property
    def body(self) -> Optional[bytes]:
        return self._body

    @property
    def redelivered(self) -> bool:
        return self._redelivered

    def ack(self) -> None:
        self._broker.record("ack", self)

    def reject(self, requeue: bool) -> None:
        self._broker.record("reject", self, requeue)
        if requeue:
            self._broker.publish(self._body, tag=self.tag, redelivered=True)


class InMemorySubscription(ISubscription):
    def __init__(self, messages: "queue.Queue[InMemoryDelivery]") -> None:
        self._messages = messages
        self.closed = False

    @property
    def active(self) -> bool:
        return not self.closed

    def get(self, timeout: float) -> Optional[InMemoryDelivery]:
        try:
            return self._messages.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self.closed = True


class InMemoryBroker(IDeliverySource):
    """Single-queue broker that records every settlement."""

    def __init__(self) -> None:
        self.messages: "queue.Queue[InMemoryDelivery]" = queue.Queue()
        self.subscriptions: List[InMemorySubscription] = []
        self.events: List[Tuple[str, int, float, Optional[bool]]] = []
        self.open_error: Optional[Exception] = None
        self.on_open: Optional[Callable[[], None]] = None
        self._lock = threading.Lock()
        self._next_tag = 0

    def open(self, queue_config: QueueConfig) -> InMemorySubscription:
        if self.on_open is not None:
            self.on_open()
        if self.open_error is not None:
            raise self.open_error
        subscription = InMemorySubscription(self.messages)
        self.subscriptions.append(subscription)
        return subscription

    def publish(
        self, body: Optional[bytes], tag: Optional[int] = None, redelivered: bool = False
    ) -> int:
        with self._lock:
            if tag is None:
                self._next_tag += 1
                tag = self._next_tag
        self.messages.put(InMemoryDelivery(self, body, tag, redelivered))
        return tag

    def record(self, action: str, delivery: InMemoryDelivery, requeue: Optional[bool] = None) -> None:
        with self._lock:
            self.events.append((action, delivery.tag, time.monotonic(), requeue))

    def count(self, action: str) -> int:
        with self._lock:
            return sum(1 for event in self.events if event[0] == action)


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


@pytest.fixture
def broker():
    return InMemoryBroker()


@pytest.fixture
def cancel_event():
    event = threading.Event()
    yield event
    event.set()


def make_consumer(broker, handler, **options):
    options.setdefault("poll_interval", 0.01)
    return Consumer(
        delivery_source=broker,
        queue_config=QueueConfig(queue_name="orders"),
        handler=handler,
        options=ConsumerOptions(**options),
    )


def test_two_workers_ack_every_successful_message(broker, cancel_event):
    handled: List[bytes] = []
    lock = threading.Lock()

    def handler(body: bytes) -> None:
        with lock:
            handled.append(body)

    consumer = make_consumer(broker, handler, workers=2)
    for number in range(5):
        broker.publish(f"order-{number}".encode())

    consumer.start(cancel_event)

    assert wait_for(lambda: broker.count("ack") == 5)
    time.sleep(0.05)
    assert broker.count("ack") == 5
    assert broker.count("reject") == 0
    assert sorted(handled) == [f"order-{number}".encode() for number in range(5)]
    assert consumer.running is True


def test_failed_message_is_requeued_after_delay_then_acked(broker, cancel_event):
    calls: List[float] = []

    def handler(body: bytes) -> None:
        calls.append(time.monotonic())
        if len(calls) == 1:
            raise RuntimeError("temporarily unavailable")

    consumer = make_consumer(broker, handler, workers=1, retry_on_error=True, retry_delay=0.01)
    tag = broker.publish(b"order-1")

    consumer.start(cancel_event)

    assert wait_for(lambda: broker.count("ack") == 1)
    assert [(event[0], event[1], event[3]) for event in broker.events] == [
        ("reject", tag, True),
        ("ack", tag, None),
    ]
    reject_time = broker.events[0][2]
    assert reject_time - calls[0] >= 0.01
    assert len(calls) == 2


def test_requeued_message_is_logged_as_redelivered(broker, cancel_event, caplog):
    calls: List[bytes] = []

    def handler(body: bytes) -> None:
        calls.append(body)
        if len(calls) <= 2:
            raise RuntimeError("still failing")

    consumer = make_consumer(broker, handler, workers=1, retry_on_error=True)
    broker.publish(b"order-1")

    with caplog.at_level(logging.ERROR):
        consumer.start(cancel_event)
        assert wait_for(lambda: broker.count("ack") == 1)

    messages = [record.getMessage() for record in caplog.records]
    failures = [message for message in messages if message.startswith("Handler failed")]
    assert failures == [
        "Handler failed for queue orders (redelivered=False): still failing",
        "Handler failed for queue orders (redelivered=True): still failing",
    ]


def test_failed_message_is_acked_when_retry_disabled(broker, cancel_event):
    def handler(body: bytes) -> None:
        raise ValueError("malformed order")

    consumer = make_consumer(broker, handler, workers=1)
    broker.publish(b"order-1")

    consumer.start(cancel_event)

    assert wait_for(lambda: broker.count("ack") == 1)
    time.sleep(0.05)
    assert broker.count("ack") == 1
    assert broker.count("reject") == 0


def test_empty_payloads_are_skipped(broker, cancel_event):
    handled: List[bytes] = []
    consumer = make_consumer(broker, handled.append, workers=1)
    broker.publish(b"")
    broker.publish(None)
    broker.publish(b"order-1")

    consumer.start(cancel_event)

    assert wait_for(lambda: broker.count("ack") == 1)
    time.sleep(0.05)
    assert handled == [b"order-1"]
    assert [event[1] for event in broker.events] == [3]


def test_in_flight_handlers_never_exceed_worker_count(broker, cancel_event):
    gate = threading.Event()
    lock = threading.Lock()
    in_flight = 0
    peak = 0

    def handler(body: bytes) -> None:
        nonlocal in_flight, peak
        with lock:
            in_flight += 1
            peak = max(peak, in_flight)
        gate.wait(timeout=3.0)
        with lock:
            in_flight -= 1

    consumer = make_consumer(broker, handler, workers=3)
    for number in range(10):
        broker.publish(f"order-{number}".encode())

    consumer.start(cancel_event)

    assert wait_for(lambda: in_flight == 3)
    time.sleep(0.05)
    assert in_flight == 3
    assert broker.messages.qsize() == 7

    gate.set()
    assert wait_for(lambda: broker.count("ack") == 10)
    assert peak == 3


def test_reconnect_stops_previous_generation_before_starting_next(broker, cancel_event):
    handled: List[bytes] = []
    consumer = make_consumer(broker, handled.append, workers=2)
    consumer.start(cancel_event)
    old_workers = list(consumer._workers)
    alive_at_reopen: Dict[str, bool] = {}

    def capture() -> None:
        alive_at_reopen.update({worker.name: worker.is_alive() for worker in old_workers})

    broker.on_open = capture
    consumer.reconnect(cancel_event)

    assert len(alive_at_reopen) == 2
    assert not any(alive_at_reopen.values())
    assert broker.subscriptions[0].closed is True
    assert broker.subscriptions[1].closed is False

    broker.publish(b"after-reconnect")
    assert wait_for(lambda: broker.count("ack") == 1)
    assert handled == [b"after-reconnect"]
    assert consumer.running is True


def test_reconnect_waits_for_in_flight_handler(broker, cancel_event):
    started = threading.Event()
    finished: List[bytes] = []

    def handler(body: bytes) -> None:
        started.set()
        time.sleep(0.05)
        finished.append(body)

    consumer = make_consumer(broker, handler, workers=1)
    broker.publish(b"slow-order")
    consumer.start(cancel_event)
    assert started.wait(timeout=3.0)

    consumer.reconnect(cancel_event)

    assert finished == [b"slow-order"]
    assert broker.count("ack") == 1


def test_start_failure_raises_and_launches_nothing(broker, cancel_event):
    broker.open_error = ConnectionFailure("orders", "connection refused")
    consumer = make_consumer(broker, lambda body: None, workers=4)
    threads_before = set(threading.enumerate())

    with pytest.raises(ConnectionFailure, match="orders"):
        consumer.start(cancel_event)

    assert set(threading.enumerate()) - threads_before == set()
    assert consumer.running is False


def test_reconnect_failure_leaves_consumer_stopped(broker, cancel_event):
    consumer = make_consumer(broker, lambda body: None, workers=2)
    consumer.start(cancel_event)
    old_workers = list(consumer._workers)

    broker.open_error = ConnectionFailure("orders", "connection refused")
    with pytest.raises(ConnectionFailure):
        consumer.reconnect(cancel_event)

    assert not any(worker.is_alive() for worker in old_workers)
    assert broker.subscriptions[0].closed is True
    assert consumer.running is False


def test_cancellation_stops_all_workers(broker):
    cancel_event = threading.Event()
    consumer = make_consumer(broker, lambda body: None, workers=3)
    consumer.start(cancel_event)
    workers = list(consumer._workers)

    cancel_event.set()

    assert wait_for(lambda: not any(worker.is_alive() for worker in workers))
    broker.publish(b"late-order")
    time.sleep(0.05)
    assert broker.count("ack") == 0
    assert broker.messages.qsize() == 1
