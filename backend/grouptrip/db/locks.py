import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class GroupLockRegistry:
    """Serializes optimizations of the same group; different groups never wait on each other"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, group_id: str):
        lock = self._locks.setdefault(group_id, asyncio.Lock())
        self._holders[group_id] = self._holders.get(group_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[group_id] -= 1
            if not self._holders[group_id]:
                del self._holders[group_id]
                del self._locks[group_id]

    def __len__(self) -> int:
        return len(self._locks)
