"""
The event channel between the worker thread and the consumer.

A bounded `queue.Queue`. The producer may block for a short moment when the
queue is full; after that the oldest events are dropped and an ErrorEvent
reports how many were lost. Order of the surviving events is preserved.
"""
import logging
import queue
import threading
from typing import List

from air_monitor.worker.models import ErrorEvent, WorkerEvent

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1024
DEFAULT_PUT_TIMEOUT = 0.05


class EventChannel:
    capacity: int
    put_timeout: float
    dropped: int # total number of events lost to overflow

    def __init__(self, capacity: int = DEFAULT_CAPACITY, put_timeout: float = DEFAULT_PUT_TIMEOUT):
        # one slot for the overflow notice, one for the event that caused it
        if capacity < 2:
            raise ValueError("EventChannel capacity must be at least 2")
        self.capacity = capacity
        self.put_timeout = put_timeout
        self.dropped = 0
        self._queue: queue.Queue = queue.Queue(maxsize=capacity)
        self._closed = threading.Event()
        # a single producer is expected, the lock only guards the overflow path
        self._overflow_lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def publish(self, event: WorkerEvent) -> None:
        """Called from the worker thread. Never raises queue.Full."""
        if self.closed:
            return
        try:
            self._queue.put(event, timeout=self.put_timeout)
            return
        except queue.Full:
            pass

        with self._overflow_lock:
            dropped = self._drop_oldest(2)
            # the consumer may have drained in the meantime, then nothing was lost
            if dropped:
                self.dropped += dropped
                logger.warning(f"Event channel full, dropped {dropped} oldest events.")
                self._queue.put_nowait(ErrorEvent(description=f"event channel overflow: dropped {dropped} events"))
            self._queue.put_nowait(event)

    def drain(self) -> List[WorkerEvent]:
        """Called from the consumer thread. Returns everything pending, never blocks."""
        events: List[WorkerEvent] = []
        if self.closed:
            return events
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> int:
        """Stops delivery. Returns the number of pending events that were discarded."""
        self._closed.set()
        discarded = 0
        while True:
            try:
                self._queue.get_nowait()
                discarded += 1
            except queue.Empty:
                break
        if discarded:
            logger.debug(f"Discarded {discarded} undelivered events on close.")
        return discarded

    def _drop_oldest(self, count: int) -> int:
        dropped = 0
        while dropped < count:
            try:
                self._queue.get_nowait()
                dropped += 1
            except queue.Empty:
                break
        return dropped
