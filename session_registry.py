"""Room membership: joins, resumption, activity and deactivation.

Nickname uniqueness and the capacity limit are only guaranteed because
``admit`` runs find-then-create under the room's lock; the store itself has
no uniqueness constraint.
"""
import time
import uuid
from typing import Callable, List, Optional

from backend import SESSIONS, StorageBackend, with_retry
from constants import SESSION_TTL_SECONDS
from errors import Conflict, InternalError, NotFound, RoomFull, Unauthorized
from locks import RoomLocks
from logging_config import get_logger
from models import Room, Session
from room_store import RoomStore
from security import generate_token

logger = get_logger(__name__)


class SessionRegistry:
    def __init__(
        self,
        backend: StorageBackend,
        rooms: RoomStore,
        locks: RoomLocks,
        session_ttl: int = SESSION_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.rooms = rooms
        self.locks = locks
        self.session_ttl = session_ttl
        self.clock = clock

    async def join(
        self,
        room_id: str,
        nickname: str,
        password: str,
        existing_session_id: Optional[str] = None,
        connection_id: Optional[str] = None,
    ) -> Session:
        room = await self.authenticate(room_id, password)
        return await self.admit(room, nickname, existing_session_id, connection_id)

    async def authenticate(self, room_id: str, password: str) -> Room:
        """Check the password, then the room's state.

        Exactly one hash comparison runs whether the room exists, has expired
        or is live, and a wrong password never learns which of those it is.
        """
        room = missing = None
        try:
            room = await self.rooms.lookup(room_id)
        except NotFound as e:
            missing = e
        if not await self.rooms.verify_password(room_id, password):
            logger.warning(f"Password check failed for room {room_id}")
            raise Unauthorized(f"bad password for room {room_id}")
        if missing is not None:
            raise missing
        return room

    def _session_expiry(self, room: Room, now: float) -> float:
        return min(now + self.session_ttl, room.expires_at)

    async def admit(
        self,
        room: Room,
        nickname: str,
        existing_session_id: Optional[str] = None,
        connection_id: Optional[str] = None,
    ) -> Session:
        """Resume or create the nickname's session. Caller has authenticated."""
        async with self.locks.get(room.id):
            now = self.clock()
            current = await self._live_session_for(room.id, nickname, now)

            if existing_session_id:
                await self._check_session_id_free(existing_session_id, current)

            if current is not None:
                return await self._resume(room, current, existing_session_id, connection_id, now)

            occupancy = await self.rooms.occupancy(room.id)
            if occupancy >= room.max_occupancy:
                logger.warning(f"Join rejected for {nickname}: room {room.id} is full ({occupancy}/{room.max_occupancy})")
                raise RoomFull(f"room {room.id} at capacity {room.max_occupancy}")

            session = Session(
                id=uuid.uuid4().hex,
                session_id=existing_session_id or generate_token(),
                room_id=room.id,
                nickname=nickname,
                joined_at=now,
                last_activity=now,
                expires_at=self._session_expiry(room, now),
                connection_id=connection_id,
            )
            created = await with_retry(
                lambda: self.backend.create(SESSIONS, session.id, session.model_dump()), "session create"
            )
            if not created:
                raise InternalError(f"session record {session.id} already exists")
            logger.info(f"{nickname} joined room {room.id} ({occupancy + 1}/{room.max_occupancy})")
            return session

    async def _live_session_for(self, room_id: str, nickname: str, now: float) -> Optional[Session]:
        live = None
        for record in await self.backend.find_active(SESSIONS, room_id=room_id, nickname=nickname):
            session = Session.model_validate(record)
            if session.is_live(now) and live is None:
                live = session
            else:
                # expired leftovers (or duplicates) must not count as active
                await self.backend.update_fields(SESSIONS, session.id, {"active": False})
        return live

    async def _check_session_id_free(self, session_id: str, current: Optional[Session]) -> None:
        for record in await self.backend.find_active(SESSIONS, session_id=session_id):
            if current is None or record["id"] != current.id:
                if record["expires_at"] > self.clock():
                    raise Conflict(f"session id already bound to {record['nickname']} in room {record['room_id']}")

    async def _resume(
        self, room: Room, session: Session, new_session_id: Optional[str], connection_id: Optional[str], now: float
    ) -> Session:
        fields = {"last_activity": now, "expires_at": self._session_expiry(room, now), "active": True}
        if new_session_id:
            fields["session_id"] = new_session_id
        if connection_id:
            fields["connection_id"] = connection_id
        await with_retry(lambda: self.backend.update_fields(SESSIONS, session.id, fields), "session resume")
        logger.info(f"Resumed session of {session.nickname} in room {session.room_id}")
        return session.model_copy(update=fields)

    async def get(self, session_id: str) -> Optional[Session]:
        records = await self.backend.find(SESSIONS, session_id=session_id)
        if not records:
            return None
        # prefer the active record when an old inactive one shares the id
        records.sort(key=lambda r: (r.get("active", False), r.get("last_activity", 0)), reverse=True)
        return Session.model_validate(records[0])

    async def touch(self, session_id: str) -> Optional[Session]:
        """Refresh a live session, never past its room's expiry.

        Returns None when the session is gone or expired; raises NotFound (or
        RoomExpired) when the session is live but its room no longer is.
        """
        session = await self.get(session_id)
        if session is None or not session.active:
            return None
        room = await self.rooms.lookup(session.room_id)
        now = self.clock()
        if not session.is_live(now):
            return None
        fields = {"last_activity": now, "expires_at": self._session_expiry(room, now)}
        await self.backend.update_fields(SESSIONS, session.id, fields)
        return session.model_copy(update=fields)

    async def set_invisible(self, session_id: str, invisible: bool) -> Optional[Session]:
        session = await self.get(session_id)
        if session is None:
            return None
        await self.backend.update_fields(SESSIONS, session.id, {"invisible": bool(invisible)})
        return session.model_copy(update={"invisible": bool(invisible)})

    async def deactivate(self, session_id: str, connection_id: Optional[str] = None) -> bool:
        """Mark inactive without deleting; the reaper removes it after expiry.

        With ``connection_id`` given, only deactivate while the session is still
        bound to that connection, so a superseded connection closing late does
        not end a session another connection resumed. The check and the write
        run under the room lock, the same lock ``admit`` rebinds under.
        """
        session = await self.get(session_id)
        if session is None:
            return False
        async with self.locks.get(session.room_id):
            session = await self.get(session_id)
            if session is None or not session.active:
                return False
            if connection_id is not None and session.connection_id not in (None, connection_id):
                logger.debug(f"Session of {session.nickname} rebound to another connection, leaving it active")
                return False
            await self.backend.update_fields(SESSIONS, session.id, {"active": False, "connection_id": None})
        logger.info(f"Session of {session.nickname} in room {session.room_id} deactivated")
        return True

    async def active_sessions(self, room_id: str) -> List[Session]:
        now = self.clock()
        sessions = [Session.model_validate(r) for r in await self.backend.find_active(SESSIONS, room_id=room_id)]
        return [s for s in sessions if s.is_live(now)]
