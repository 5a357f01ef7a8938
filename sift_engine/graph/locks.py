"""
Readers–writer locks for graph neighbourhoods.

StripedLocks maps arena slots onto a fixed set of ReadWriteLocks. Multi-stripe
acquisitions always proceed in ascending stripe order, so readers and writers
touching overlapping regions cannot deadlock. Locks are not reentrant.
"""

import threading
from contextlib import contextmanager
from typing import Iterable, Iterator, List


class ReadWriteLock:
    """Many readers or one writer; waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()


class StripedLocks:
    """Fixed pool of ReadWriteLocks addressed by slot number."""

    def __init__(self, stripes: int):
        self._locks: List[ReadWriteLock] = [ReadWriteLock() for _ in range(stripes)]

    def __len__(self) -> int:
        return len(self._locks)

    def _stripes_for(self, slots: Iterable[int]) -> List[int]:
        return sorted({slot % len(self._locks) for slot in slots})

    @contextmanager
    def read(self, slots: Iterable[int]) -> Iterator[None]:
        stripes = self._stripes_for(slots)
        acquired: List[int] = []
        try:
            for s in stripes:
                self._locks[s].acquire_read()
                acquired.append(s)
            yield
        finally:
            for s in reversed(acquired):
                self._locks[s].release_read()

    @contextmanager
    def write(self, slots: Iterable[int]) -> Iterator[None]:
        stripes = self._stripes_for(slots)
        acquired: List[int] = []
        try:
            for s in stripes:
                self._locks[s].acquire_write()
                acquired.append(s)
            yield
        finally:
            for s in reversed(acquired):
                self._locks[s].release_write()

    @contextmanager
    def read_all(self) -> Iterator[None]:
        with self.read(range(len(self._locks))):
            yield
