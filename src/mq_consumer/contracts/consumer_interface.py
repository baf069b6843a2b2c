"""Defines the contract for queue consumers."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Optional


class IConsumer(ABC):
    """Consumes one queue with a pool of workers."""

    @abstractmethod
    def start(self, cancel_event: threading.Event) -> None:
        """Open the subscription and launch the workers without waiting for them."""

    @abstractmethod
    def reconnect(self, cancel_event: threading.Event) -> None:
        """Stop the current workers and start a fresh generation."""

    @abstractmethod
    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the current workers and release the subscription."""
