"""
EventBus -- named-channel, fire-and-forget delivery of progress events.

Contract:
    ``EventBus`` is itself a ProgressSink: pass ``bus.publish`` (or the bus)
    to ``BatchRunner.run``.  Subscribers attach per channel; a subscriber
    that raises is logged and skipped, the others still receive the event.
    ``QueuedEventSink`` wraps any sink with a queue and a daemon thread so a
    slow consumer never delays the runner.

Architecture: orderbox_batch/services.  Imports from orderbox_batch.domain
    and kernel logging.
"""

from __future__ import annotations

import queue
import threading
from typing import Callable

from orderbox_kernel.logging_config import get_logger

from orderbox_batch.domain.events import BatchEvent, ProgressSink

logger = get_logger("batch.event_bus")

Subscriber = Callable[[BatchEvent], None]

_STOP = object()


class EventBus:
    """Synchronous per-channel fan-out.  Thread-safe subscribe/unsubscribe."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscriber]] = {}

    def subscribe(self, channel: str, subscriber: Subscriber) -> Callable[[], None]:
        """Attach ``subscriber`` to ``channel``.  Returns an unsubscribe callable."""
        with self._lock:
            self._subscribers.setdefault(channel, []).append(subscriber)

        def unsubscribe() -> None:
            with self._lock:
                subs = self._subscribers.get(channel, [])
                if subscriber in subs:
                    subs.remove(subscriber)

        return unsubscribe

    def publish(self, channel: str, event: BatchEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(channel, ()))
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:
                logger.warning(
                    "event_subscriber_failed",
                    extra={"channel": channel, "event": type(event).__name__},
                    exc_info=True,
                )

    __call__ = publish

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, ()))


class QueuedEventSink:
    """
    Decouples a sink from the runner thread.

    ``__call__`` only enqueues; a daemon thread delivers to the wrapped sink
    in FIFO order.  ``close()`` drains pending events and stops the thread.
    """

    def __init__(self, sink: ProgressSink, name: str = "orderbox-events"):
        self._sink = sink
        self._queue: queue.Queue = queue.Queue()
        self._thread = threading.Thread(target=self._drain, name=name, daemon=True)
        self._closed = False
        self._thread.start()

    def __call__(self, channel: str, event: BatchEvent) -> None:
        if self._closed:
            logger.debug("event_dropped_after_close", extra={"channel": channel})
            return
        self._queue.put((channel, event))

    def close(self, timeout: float | None = 5.0) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(_STOP)
        self._thread.join(timeout=timeout)

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            channel, event = item
            try:
                self._sink(channel, event)
            except Exception:
                logger.warning(
                    "queued_event_delivery_failed",
                    extra={"channel": channel, "event": type(event).__name__},
                    exc_info=True,
                )
