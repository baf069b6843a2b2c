"""Runtime options controlling the worker pool and retry policy."""

from dataclasses import dataclass


@dataclass(frozen=True)
class ConsumerOptions:
    """Worker pool size and failure handling for a consumer.

    ``retry_delay`` and ``poll_interval`` are in seconds; ``poll_interval``
    bounds how long an idle worker waits before re-checking its stop signals.
    With ``retry_on_error`` disabled a failed message is acknowledged and
    therefore dropped; with it enabled the worker waits ``retry_delay`` and
    requeues the message, with no limit on the number of attempts.
    """

    workers: int = 1
    retry_on_error: bool = False
    retry_delay: float = 0.0
    poll_interval: float = 0.1

    def __post_init__(self) -> None:
        if self.workers < 1:
            raise ValueError("workers must be at least 1")
        if self.retry_delay < 0:
            raise ValueError("retry_delay must not be negative")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
