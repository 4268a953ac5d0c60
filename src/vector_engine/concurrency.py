"""Concurrency helpers: a writer-preferring read/write lock and a cancellation token."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from vector_engine.errors import OperationCancelled


class ReadWriteLock:
    """Single-writer / multiple-reader lock.

    Readers share the lock; a writer waits for active readers to drain and
    blocks new readers while it is waiting, so writes are not starved.
    Not reentrant.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read_lock(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_lock(self) -> Iterator[None]:
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class CancellationToken:
    """Cooperative cancellation flag checked between chunks or iterations."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, context: object = None) -> None:
        if self._event.is_set():
            raise OperationCancelled(context=context)
