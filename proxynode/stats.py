"""Traffic counters and a writer that counts what passes through it."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from typing import Any


class Counter:
    """A thread-safe integer counter."""

    def __init__(self, value: int = 0) -> None:
        self._value = value
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        return self._value

    def add(self, delta: int) -> int:
        """Add ``delta`` and return the new value."""
        with self._lock:
            self._value += delta
            return self._value

    def set(self, value: int) -> int:
        """Replace the value and return the previous one."""
        with self._lock:
            previous = self._value
            self._value = value
            return previous


class SizeStatWriter:
    """Counts the bytes of each write before passing it on to ``writer``."""

    def __init__(self, counter: Any, writer: Any) -> None:
        self.counter = counter
        self.writer = writer

    def write(self, chunks: Iterable[bytes]) -> Any:
        """Count the total size of ``chunks`` and forward them."""
        chunks = list(chunks)
        self.counter.add(sum(len(chunk) for chunk in chunks))
        return self.writer.write(chunks)

    def close(self) -> None:
        """Close the underlying writer if it can be closed."""
        close = getattr(self.writer, "close", None)
        if close is not None:
            close()

    def interrupt(self) -> None:
        """Interrupt the underlying writer if it supports it, else close it."""
        interrupt = getattr(self.writer, "interrupt", None)
        if interrupt is not None:
            interrupt()
        else:
            self.close()