"""
Process-local mutual exclusion per bank feed line and per ledger record.

Pairs with the SELECT ... FOR UPDATE row lock taken by the match ledger:
the asyncio lock serialises coroutines inside one worker, the row lock
serialises workers sharing one PostgreSQL database.

Mutations that claim a ledger record take the record lock first and the
line lock second, never the other way round.
"""

import asyncio
import weakref


def record_lock_key(record_type: str, record_id: str) -> str:
    return f"record:{record_type}:{record_id}"


class LineLockRegistry:
    """Hands out one asyncio.Lock per key, released once nobody holds a reference."""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


line_locks = LineLockRegistry()
