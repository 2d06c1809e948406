"""Process-wide single-flight gate around the inference engine."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class RequestSerializer:
    """One permit; every generation request holds it from start to finish.

    Waiters are suspended cooperatively on an :class:`asyncio.Lock`. There is
    no timeout, so a stalled holder blocks everyone queued behind it.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._waiting = 0
        self._served = 0

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    @property
    def waiting(self) -> int:
        return self._waiting

    @property
    def served(self) -> int:
        return self._served

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        self._waiting += 1
        try:
            await self._lock.acquire()
        finally:
            self._waiting -= 1
        try:
            yield
        finally:
            self._served += 1
            self._lock.release()
