"""
Progress publishing and cooperative cancellation for refresh cycles.
"""

import logging
import threading
from typing import Callable, List, Optional

from .errors import Cancelled
from .models import ProgressEvent

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressEvent], None]


class CancellationToken:
    """Shared abort flag polled at every batch and page boundary."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled("Fetch cancelled")

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True if cancelled meanwhile."""
        return self._event.wait(seconds)


class ProgressBus:
    """Fan-out of progress events to any number of subscribers."""

    def __init__(self):
        self._listeners: List[ProgressListener] = []
        self._lock = threading.Lock()
        self.latest: Optional[ProgressEvent] = None

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """Register a listener; the returned callable unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: ProgressEvent) -> None:
        self.latest = event
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                # An observer must never break the refresh cycle
                logger.error(f"Progress listener failed: {e}")
