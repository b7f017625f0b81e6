"""
Bounded output buffer shared by the supervisor and the UI.

Producers append lines as they arrive; readers either take a snapshot of the
retained lines or follow new lines as an async iterator.
"""

import asyncio
from collections import deque
from typing import AsyncIterator, Iterable, List, Set


class OutputBuffer:
    """Ring buffer of output lines with change notification."""

    def __init__(self, max_lines: int = 2000):
        self._lines = deque(maxlen=max_lines)
        self._total = 0
        self._waiters: Set[asyncio.Event] = set()
        self._closed = False

    @property
    def max_lines(self) -> int:
        return self._lines.maxlen

    @property
    def total(self) -> int:
        """Number of lines ever appended, including evicted ones."""
        return self._total

    def append(self, line: str) -> None:
        self._lines.append(line.rstrip("\r\n"))
        self._total += 1
        self._notify()

    def extend(self, lines: Iterable[str]) -> None:
        for line in lines:
            self.append(line)

    def clear(self) -> None:
        self._lines.clear()
        self._total = 0
        self._closed = False
        self._notify()

    def close(self) -> None:
        self._closed = True
        self._notify()

    def _notify(self) -> None:
        for waiter in list(self._waiters):
            waiter.set()

    def snapshot(self) -> List[str]:
        return list(self._lines)

    def __len__(self) -> int:
        return len(self._lines)

    async def follow(self) -> AsyncIterator[str]:
        """
        Yield retained lines, then new lines as they arrive, until closed.

        Lines evicted before the reader catches up are skipped.
        """
        seen = self._total - len(self._lines)
        while True:
            if seen > self._total:
                # Buffer was cleared
                seen = 0
            first_retained = self._total - len(self._lines)
            seen = max(seen, first_retained)
            if seen < self._total:
                pending = list(self._lines)[seen - first_retained:]
                seen = self._total
                for line in pending:
                    yield line
                continue
            if self._closed:
                return
            waiter = asyncio.Event()
            self._waiters.add(waiter)
            try:
                await waiter.wait()
            finally:
                self._waiters.discard(waiter)
