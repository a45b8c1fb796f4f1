import asyncio
from typing import Dict


class RoomLocks:
    """One asyncio.Lock per room id.

    Capacity checks, nickname resumption, appends and wipes for a room run
    under that room's lock; unrelated rooms never contend.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, room_id: str) -> asyncio.Lock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = self._locks[room_id] = asyncio.Lock()
        return lock

    def discard(self, room_id: str) -> None:
        lock = self._locks.get(room_id)
        if lock is not None and not lock.locked():
            del self._locks[room_id]

    def __len__(self) -> int:
        return len(self._locks)
