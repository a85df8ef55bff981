"""Per-key asyncio locks.

One lock per device, vehicle or batch id, plus a retry helper for
compare-and-set writes.  Lock entries are reference-counted
and dropped once nobody holds or waits on them, so the table does not grow
with the number of devices ever seen.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, Tuple, TypeVar

import structlog

from mileage_guard.errors import ConcurrencyConflictError

logger = structlog.get_logger(__name__)

_T = TypeVar("_T")
_CONFLICT_ATTEMPTS = 5


class KeyedLocks:
    """A table of ``asyncio.Lock`` keyed by string."""

    def __init__(self, name: str = "locks") -> None:
        self.name = name
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    def _acquire_ref(self, key: str) -> asyncio.Lock:
        lock, refs = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, refs + 1)
        return lock

    def _release_ref(self, key: str) -> None:
        lock, refs = self._locks[key]
        if refs <= 1:
            del self._locks[key]
        else:
            self._locks[key] = (lock, refs - 1)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Wait for and hold the lock for *key*."""
        lock = self._acquire_ref(key)
        try:
            async with lock:
                yield
        finally:
            self._release_ref(key)

    @asynccontextmanager
    async def try_hold(self, key: str) -> AsyncIterator[bool]:
        """Hold the lock for *key* only if it is free right now.

        Yields ``True`` when acquired, ``False`` when another task holds it.
        """
        lock = self._acquire_ref(key)
        if lock.locked():
            self._release_ref(key)
            yield False
            return
        try:
            await lock.acquire()
            try:
                yield True
            finally:
                lock.release()
        finally:
            self._release_ref(key)

    def is_locked(self, key: str) -> bool:
        entry = self._locks.get(key)
        return entry is not None and entry[0].locked()

    def __len__(self) -> int:
        return len(self._locks)


def retry_on_conflict(
    operation: Callable[[], _T],
    *,
    attempts: int = _CONFLICT_ATTEMPTS,
    what: str = "write",
) -> _T:
    """Run a read-modify-write *operation*, re-running it on a lost CAS.

    *operation* must re-read whatever it modifies, so each retry starts
    from the latest stored version.
    """
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except ConcurrencyConflictError:
            if attempt == attempts:
                raise
            logger.debug("cas_conflict_retry", what=what, attempt=attempt)
    raise AssertionError("unreachable")
