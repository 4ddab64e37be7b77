"""In-process locking for per-appointment critical sections."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict

logger = logging.getLogger(__name__)


class AppointmentLocks:
    """
    Keyed asyncio locks so the confirmation path and the janitor never write
    the same appointment concurrently inside one process.

    Cross-process safety comes from compare-and-set updates in the store.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def acquire(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                logger.debug(f"Acquired appointment lock: {key}")
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


_appointment_locks = AppointmentLocks()


def get_appointment_locks() -> AppointmentLocks:
    """Get the process-wide lock registry."""
    return _appointment_locks
