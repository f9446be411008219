# /agentflow/utils/locks.py

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, AsyncIterator

# Serializes work per key (conversation keys "<end_user_id>:<channel_id>" and
# end-user keys "end_user:<business_id>:<phone>") while letting different keys
# run in parallel. Locks are dropped once nobody holds or waits on them, so the
# map does not grow with every user ever seen.


class KeyedLock:
    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = {}

    @asynccontextmanager
    async def __call__(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
            self._refs[key] = 0
        self._refs[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())
