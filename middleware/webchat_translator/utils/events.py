"""Ordered observer channel."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Generic, List, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventChannel(Generic[T]):
    """
    Publishes events to listeners and subscriber queues in publish order.

    Publishers must serialize their own publish calls (the arbiter publishes
    under its gate), so delivery order always matches transition order.
    Queues are asyncio queues and must be consumed on the publisher's loop.
    """

    def __init__(self) -> None:
        self._listeners: List[Callable[[T], None]] = []
        self._queues: List[asyncio.Queue] = []
        self._lock = threading.Lock()

    def add_listener(self, listener: Callable[[T], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[T], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        with self._lock:
            self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            if queue in self._queues:
                self._queues.remove(queue)

    def publish(self, event: T) -> None:
        with self._lock:
            listeners = list(self._listeners)
            queues = list(self._queues)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                # one broken observer must not block the others
                logger.exception("Event listener failed for %r", event)
        for queue in queues:
            queue.put_nowait(event)
