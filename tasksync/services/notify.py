"""Non-blocking "tasks changed" signal from the sync engine to readers."""

import logging
import queue
import threading
from dataclasses import dataclass
from datetime import datetime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TasksChanged:
    last_sync: datetime | None
    list_count: int


class ObserverChannel:
    """Small bounded buffer. Publishing never blocks; a full buffer drops the event."""

    def __init__(self, maxsize: int = 1):
        self._queue: queue.Queue[TasksChanged] = queue.Queue(maxsize=max(1, maxsize))
        self._counter_lock = threading.Lock()
        self.published = 0
        self.dropped = 0

    def publish(self, event: TasksChanged) -> bool:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            with self._counter_lock:
                self.dropped += 1
            logger.debug("Observer buffer full, dropping change event")
            return False
        with self._counter_lock:
            self.published += 1
        return True

    def wait(self, timeout: float | None = None) -> TasksChanged | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
