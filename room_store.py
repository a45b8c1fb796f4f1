"""Room lifecycle: creation, lookup with lazy expiry, password checks, occupancy."""
import asyncio
import time
from typing import Callable, Optional, Set, Tuple

from backend import ROOMS, SESSIONS, StorageBackend, with_retry
from constants import MAX_OCCUPANCY_LIMIT, ROOM_TTL_SECONDS
from errors import Conflict, NotFound, RoomExpired, ValidationError
from logging_config import get_logger
from models import Room, Session
from security import PasswordHasher, generate_client_key, generate_token

logger = get_logger(__name__)

ROOM_ID_ATTEMPTS = 5


def clamp_occupancy(value: int) -> int:
    return min(max(int(value), 1), MAX_OCCUPANCY_LIMIT)


class RoomStore:
    def __init__(
        self,
        backend: StorageBackend,
        hasher: PasswordHasher,
        room_ttl: int = ROOM_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.hasher = hasher
        self.room_ttl = room_ttl
        self.clock = clock
        self._expiry_tasks: Set[asyncio.Task] = set()

    async def create(
        self, creator: str, password: str, max_occupancy: int, ttl: Optional[int] = None
    ) -> Tuple[Room, str]:
        """Create a room and return it with the client-side key."""
        ttl = self.room_ttl if ttl is None else ttl
        if ttl < 0:
            raise ValidationError("Room TTL cannot be negative")

        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        encryption_key = generate_client_key()
        now = self.clock()

        for _ in range(ROOM_ID_ATTEMPTS):
            room = Room(
                id=generate_token(),
                password_hash=password_hash,
                creator=creator,
                max_occupancy=clamp_occupancy(max_occupancy),
                created_at=now,
                expires_at=now + ttl,
                encryption_key=encryption_key,
                last_activity=now,
            )
            created = await with_retry(
                lambda: self.backend.create(ROOMS, room.id, room.model_dump()), "room create"
            )
            if created:
                logger.info(f"Room {room.id} created by {creator}: max_occupancy={room.max_occupancy}, ttl={ttl}s")
                return room, encryption_key
            logger.warning(f"Room id collision on {room.id}, regenerating")
        raise Conflict("could not allocate a unique room id")

    async def lookup(self, room_id: str) -> Room:
        record = await self.backend.get(ROOMS, room_id)
        if record is None:
            logger.debug(f"Room {room_id} not found")
            raise NotFound(f"room {room_id} not found")

        room = Room.model_validate(record)
        if room.is_expired(self.clock()):
            if room.active:
                self._schedule_mark_inactive(room_id)
            raise RoomExpired(f"room {room_id} expired")
        if not room.active:
            raise NotFound(f"room {room_id} inactive")
        return room

    def _schedule_mark_inactive(self, room_id: str) -> None:
        task = asyncio.create_task(self._mark_inactive_quietly(room_id))
        self._expiry_tasks.add(task)
        task.add_done_callback(self._expiry_tasks.discard)

    async def _mark_inactive_quietly(self, room_id: str) -> None:
        try:
            await self.mark_inactive(room_id)
        except Exception as e:
            logger.warning(f"Lazy expiry of room {room_id} failed: {e}")

    async def mark_inactive(self, room_id: str) -> bool:
        updated = await self.backend.update_fields(ROOMS, room_id, {"active": False})
        if updated:
            logger.info(f"Room {room_id} marked inactive")
        return updated

    async def verify_password(self, room_id: str, password: str) -> bool:
        """Constant-time check. A missing room costs the same as a wrong password."""
        record = await self.backend.get(ROOMS, room_id)
        if record is None:
            return await asyncio.to_thread(self.hasher.burn, password)
        return await asyncio.to_thread(self.hasher.verify, password, record["password_hash"])

    async def occupancy(self, room_id: str) -> int:
        now = self.clock()
        sessions = await self.backend.find_active(SESSIONS, room_id=room_id)
        return sum(1 for record in sessions if Session.model_validate(record).is_live(now))

    async def touch(self, room_id: str) -> None:
        await self.backend.update_fields(ROOMS, room_id, {"last_activity": self.clock()})
