"""Message storage with TTL, per-sender rate limiting, read receipts and wipe.

Appends and wipes for a room hold the room lock, and their ``on_accept`` /
``on_wiped`` callbacks run before it is released, so subscribers see
messages and wipe notices in the order the ledger accepted them.
"""
import time
from typing import Callable, List, Optional

from backend import MESSAGES, StorageBackend, with_retry
from constants import MESSAGE_TTL_SECONDS
from errors import InternalError, RateLimited, ValidationError
from locks import RoomLocks
from logging_config import get_logger
from models import Message, ReadReceipt
from rate_limit import SlidingWindowLimiter
from room_store import RoomStore
from security import generate_token

logger = get_logger(__name__)


class MessageLedger:
    def __init__(
        self,
        backend: StorageBackend,
        locks: RoomLocks,
        limiter: Optional[SlidingWindowLimiter] = None,
        retention: int = MESSAGE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        rooms: Optional[RoomStore] = None,
    ):
        self.backend = backend
        self.locks = locks
        self.limiter = limiter or SlidingWindowLimiter()
        self.retention = retention
        self.clock = clock
        # when set, appends are refused once the room is gone or expired
        self.rooms = rooms

    def rate_limit_check(self, room_id: str, sender: str) -> bool:
        return self.limiter.allows(room_id, sender, self.clock())

    async def append(
        self,
        room_id: str,
        sender: str,
        ciphertext: str,
        iv: str = "",
        ttl: Optional[float] = None,
        on_accept: Optional[Callable[[Message], None]] = None,
    ) -> Message:
        if ttl is not None and ttl < 0:
            raise ValidationError("Message TTL cannot be negative")
        # never outlive the room's retention window
        ttl = self.retention if ttl is None else min(ttl, self.retention)

        async with self.locks.get(room_id):
            now = self.clock()
            expires_at = now + ttl
            if self.rooms is not None:
                room = await self.rooms.lookup(room_id)
                expires_at = min(expires_at, room.expires_at)
            if not self.limiter.allows(room_id, sender, now):
                logger.warning(f"Rate limit hit by {sender} in room {room_id}")
                raise RateLimited(f"{sender} exceeded {self.limiter.limit} messages per {self.limiter.window}s")

            message = Message(
                id=generate_token(),
                room_id=room_id,
                sender=sender,
                ciphertext=ciphertext,
                iv=iv,
                created_at=now,
                expires_at=expires_at,
            )
            created = await with_retry(
                lambda: self.backend.create(MESSAGES, message.id, message.model_dump()), "message append"
            )
            if not created:
                raise InternalError(f"message id {message.id} already exists")
            self.limiter.record(room_id, sender, now)
            logger.debug(f"Message {message.id} from {sender} stored in room {room_id}, ttl={ttl}s")

            if on_accept is not None:
                on_accept(message)
            return message

    async def get(self, message_id: str) -> Optional[Message]:
        record = await self.backend.get(MESSAGES, message_id)
        if record is None:
            return None
        message = Message.model_validate(record)
        if message.is_expired(self.clock()):
            return None
        return message

    async def history(self, room_id: str) -> List[Message]:
        now = self.clock()
        messages = [Message.model_validate(r) for r in await self.backend.find(MESSAGES, room_id=room_id)]
        visible = [m for m in messages if m.visible and not m.is_expired(now)]
        return sorted(visible, key=lambda m: m.created_at)

    async def mark_read(self, message_id: str, nickname: str, room_id: Optional[str] = None) -> Optional[Message]:
        """Add a read receipt once per nickname. Repeated calls are no-ops.

        With ``room_id`` given, messages of other rooms are ignored.
        """
        message = await self.get(message_id)
        if message is None or (room_id is not None and message.room_id != room_id):
            return None
        async with self.locks.get(message.room_id):
            # re-read under the lock so two concurrent calls cannot both append
            message = await self.get(message_id)
            if message is None:
                return None
            if message.has_been_read_by(nickname):
                return message
            message.read_by.append(ReadReceipt(nickname=nickname, read_at=self.clock()))
            await self.backend.update_fields(
                MESSAGES, message_id, {"read_by": [r.model_dump() for r in message.read_by]}
            )
            return message

    async def wipe(self, room_id: str, on_wiped: Optional[Callable[[int], None]] = None) -> int:
        async with self.locks.get(room_id):
            records = await self.backend.find(MESSAGES, room_id=room_id)
            removed = await self.backend.delete(MESSAGES, *(r["id"] for r in records))
            logger.info(f"Wiped {removed} messages from room {room_id}")
            if on_wiped is not None:
                on_wiped(removed)
            return removed

    def prune_rate_windows(self) -> int:
        return self.limiter.prune(self.clock())

    def forget_room(self, room_id: str) -> None:
        self.limiter.forget_room(room_id)
