"""Async concurrency primitives used by the serialized CRUD handler."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class ExclusiveAccess:
    """Small wrapper over ``asyncio.Lock`` granting one holder at a time, with diagnostics.

    Waiters are served in FIFO order, so operations submitted to one owner run
    in submission order.
    """

    def __init__(self, name: str = "exclusive") -> None:
        if not name:
            raise ValueError("name must be a non-empty string")
        self._name = name
        self._lock = asyncio.Lock()
        self._held_by: str | None = None
        self._waiting = 0
        self._acquisitions = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    @property
    def held_by(self) -> str | None:
        return self._held_by

    @property
    def waiting(self) -> int:
        return self._waiting

    @property
    def acquisitions(self) -> int:
        return self._acquisitions

    async def acquire(self, operation: str = "anonymous") -> None:
        self._waiting += 1
        try:
            # Cancellation while waiting here does not acquire the lock.
            await self._lock.acquire()
        finally:
            self._waiting -= 1
        self._held_by = operation
        self._acquisitions += 1

    def release(self) -> None:
        if not self._lock.locked():
            raise RuntimeError("release called without a matching acquire")
        self._held_by = None
        self._lock.release()

    @asynccontextmanager
    async def hold(self, operation: str = "anonymous") -> AsyncIterator[None]:
        await self.acquire(operation)
        try:
            yield
        finally:
            self.release()

    def snapshot(self) -> dict[str, object]:
        return {
            "name": self._name,
            "locked": self._lock.locked(),
            "held_by": self._held_by,
            "waiting": self._waiting,
            "acquisitions": self._acquisitions,
        }


__all__ = ["ExclusiveAccess"]
