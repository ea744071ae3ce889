"""Last-known-good snapshot shared by the sync engine and foreground readers."""

import threading
from contextlib import contextmanager
from datetime import datetime, timezone

from tasksync.models.tasks import Snapshot, Task


class ReadWriteLock:
    """Many concurrent readers or a single writer. Waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class SyncCache:
    """Holds ``{tasks, last_sync}``. Callers always get copies, never the stored tree."""

    def __init__(self, snapshot: Snapshot | None = None):
        self._lock = ReadWriteLock()
        self._snapshot = snapshot.model_copy(deep=True) if snapshot else Snapshot()

    def read(self) -> Snapshot:
        with self._lock.read():
            return self._snapshot.model_copy(deep=True)

    @property
    def last_sync(self) -> datetime | None:
        with self._lock.read():
            return self._snapshot.last_sync

    def replace(self, snapshot: Snapshot) -> None:
        fresh = snapshot.model_copy(deep=True)
        with self._lock.write():
            self._snapshot = fresh

    def replace_if_changed(self, tasks: list[Task], now: datetime | None = None) -> bool:
        """Swap in ``tasks`` unless they equal the cached forest. Returns True on swap."""
        fresh = [t.model_copy(deep=True) for t in tasks]
        with self._lock.write():
            if self._snapshot.tasks == fresh:
                return False
            self._snapshot = Snapshot(tasks=fresh, last_sync=now or datetime.now(timezone.utc))
            return True
