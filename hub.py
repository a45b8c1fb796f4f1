"""Per-connection state machine for the realtime websocket.

    Connecting -> AwaitingJoin -> Joined -> Closed

Frames in both directions are JSON objects ``{"event": name, "data": {...}}``.
Everything the hub sends goes through one outbox queue drained by a writer
task, so direct replies and room broadcasts reach the client in the order
they were queued. Room-scoped events received before Joined are answered
with "Not in a room" instead of being dropped.
"""
import asyncio
import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import pydantic
from fastapi import WebSocket, WebSocketDisconnect

import errors
from broadcast import make_frame, new_outbox
from coordinator import Coordinator
from logging_config import get_logger
from models import Message, Room, Session, isoformat
from schemas.events import EVENT_SCHEMAS, ROOM_EVENTS

logger = get_logger(__name__)

ERROR_EVENTS = {"join-room": "join-error", "send-message": "message-error"}


class HubState(str, Enum):
    CONNECTING = "connecting"
    AWAITING_JOIN = "awaiting_join"
    JOINED = "joined"
    CLOSED = "closed"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConnectionHub:
    def __init__(self, websocket: WebSocket, coordinator: Coordinator, connection_id: Optional[str] = None):
        self.websocket = websocket
        self.coordinator = coordinator
        self.connection_id = connection_id or str(uuid.uuid4())
        self.state = HubState.CONNECTING
        self._outbox = new_outbox()
        self._writer: Optional[asyncio.Task] = None
        self._room: Optional[Room] = None
        self._session: Optional[Session] = None
        self._handlers = {
            "join-room": self._on_join,
            "send-message": self._on_send_message,
            "start-typing": self._on_start_typing,
            "stop-typing": self._on_stop_typing,
            "mark-read": self._on_mark_read,
            "toggle-invisible": self._on_toggle_invisible,
            "panic-mode": self._on_panic,
            "ping": self._on_ping,
        }

    @property
    def room_id(self) -> Optional[str]:
        return self._room.id if self._room else None

    @property
    def nickname(self) -> Optional[str]:
        return self._session.nickname if self._session else None

    # -- lifecycle ---------------------------------------------------------

    def open(self) -> None:
        """Transport is up: no handshake round trip, go straight to AwaitingJoin."""
        self.state = HubState.AWAITING_JOIN
        self._writer = asyncio.create_task(self._drain_outbox())
        logger.info(f"Connection {self.connection_id} opened")

    async def run(self) -> None:
        self.open()
        reason = "connection ended"
        try:
            while self.state is not HubState.CLOSED:
                try:
                    raw = await asyncio.wait_for(self.websocket.receive_text(), timeout=self.coordinator.idle_timeout)
                except asyncio.TimeoutError:
                    # missing liveness is handled exactly like a close
                    reason = "idle timeout"
                    break
                except WebSocketDisconnect:
                    reason = "client disconnected"
                    break
                await self.handle_frame(raw)
        except Exception as e:
            if self.state is not HubState.CLOSED:
                logger.error(f"WebSocket error for connection {self.connection_id}: {e}", exc_info=True)
                reason = "transport error"
        finally:
            await self.close(reason)

    async def close(self, reason: str = "closed") -> None:
        """Idempotent. The state flips before the first await, so concurrent callers return early."""
        if self.state is HubState.CLOSED:
            return
        previous = self.state
        self.state = HubState.CLOSED
        logger.info(f"Connection {self.connection_id} closing ({reason})")

        if previous is HubState.JOINED:
            await self._leave_room(announce=True)

        writer = self._writer
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Writer for {self.connection_id} ended with {e}")

        try:
            await self.websocket.close()
        except Exception as e:
            logger.debug(f"Error closing WebSocket: {e}")

    async def _leave_room(self, announce: bool) -> None:
        room_id, session = self.room_id, self._session
        # stop delivery first, synchronously
        self.coordinator.broadcaster.unsubscribe(room_id, self.connection_id)
        self._room = None
        self._session = None
        try:
            left = await self.coordinator.sessions.deactivate(session.session_id, self.connection_id)
        except Exception as e:
            logger.error(f"Failed to deactivate session of {session.nickname} in room {room_id}: {e}", exc_info=True)
            left = True
        if announce and left:
            self.coordinator.broadcaster.publish(room_id, "user-left", {
                "user": {"nickname": session.nickname},
                "message": f"{session.nickname} left the room",
                "timestamp": _now_iso(),
            })
        logger.info(f"User {session.nickname} left room {room_id}")

    async def _drain_outbox(self) -> None:
        try:
            while True:
                frame = await self._outbox.get()
                await self.websocket.send_json(frame)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.info(f"Send to connection {self.connection_id} failed: {e}")
            await self.close("send failed")

    # -- dispatch ----------------------------------------------------------

    def emit(self, event: str, data: Optional[dict] = None) -> None:
        try:
            self._outbox.put_nowait(make_frame(event, data))
        except asyncio.QueueFull:
            logger.warning(f"Outbox full for connection {self.connection_id}, dropping {event}")

    def _reply_error(self, event: str, error: errors.ChatError) -> None:
        self.emit(ERROR_EVENTS.get(event, "error"), dict(error.to_dict(), event=event))

    async def handle_frame(self, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            self._reply_error("unknown", errors.ValidationError("Malformed frame: expected JSON"))
            return
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            self._reply_error("unknown", errors.ValidationError("Malformed frame: missing event name"))
            return

        event = frame["event"]
        data = frame.get("data")
        if data is None:
            data = {}
        logger.debug(f"Connection {self.connection_id} received {event}")

        schema = EVENT_SCHEMAS.get(event)
        if schema is None:
            self._reply_error(event, errors.ValidationError(f"Unknown event: {event}"))
            return
        if event in ROOM_EVENTS and self.state is not HubState.JOINED:
            self._reply_error(event, errors.ValidationError("Not in a room"))
            return

        try:
            payload = schema.model_validate(data)
        except pydantic.ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first.get("loc", ())) or "data"
            self._reply_error(event, errors.ValidationError(f"Invalid {field}: {first.get('msg')}"))
            return

        try:
            await self._handlers[event](payload)
        except errors.ChatError as e:
            logger.info(f"{event} from {self.connection_id} rejected: {e.detail}")
            self._reply_error(event, e)
        except Exception as e:
            logger.error(f"Error handling {event} from {self.connection_id}: {e}", exc_info=True)
            self._reply_error(event, errors.InternalError())

    async def _require_session(self) -> Session:
        """Refresh the session's activity; drop back to AwaitingJoin if it or its room is gone."""
        try:
            session = await self.coordinator.sessions.touch(self._session.session_id)
        except errors.NotFound:
            await self._drop_to_awaiting_join()
            raise
        if session is None:
            await self._drop_to_awaiting_join()
            raise errors.NotFound("session expired", public_message="Session expired. Please join again.")
        self._session = session
        return session

    async def _drop_to_awaiting_join(self) -> None:
        logger.info(f"Session of {self.nickname} in room {self.room_id} no longer active")
        await self._leave_room(announce=False)
        self.state = HubState.AWAITING_JOIN

    def _client_host(self) -> str:
        client = getattr(self.websocket, "client", None)
        return client.host if client else "unknown"

    # -- handlers ----------------------------------------------------------

    async def _on_join(self, payload) -> None:
        if self.state is HubState.JOINED:
            raise errors.ValidationError("Already in a room")

        c = self.coordinator
        c.join_throttle.check(self._client_host())
        room = await c.sessions.authenticate(payload.roomId, payload.password)
        session = await c.sessions.admit(room, payload.nickname, payload.sessionId, self.connection_id)
        if self.state is HubState.CLOSED:
            # transport went away while the join was in flight
            await c.sessions.deactivate(session.session_id, self.connection_id)
            return

        async with c.locks.get(room.id):
            history = await c.ledger.history(room.id)
            members = await c.sessions.active_sessions(room.id)
            self._room = room
            self._session = session
            c.broadcaster.subscribe(room.id, self.connection_id, self._outbox)
            self.state = HubState.JOINED
            self.emit("session-updated", {"sessionId": session.session_id})
            self.emit("room-info", self._snapshot(room, session, members, history))
        await c.rooms.touch(room.id)

        c.broadcaster.publish(room.id, "user-joined", {
            "nickname": session.nickname,
            "timestamp": _now_iso(),
        }, exclude=[self.connection_id])
        logger.info(f"{session.nickname} joined room {room.id} on connection {self.connection_id}")

    @staticmethod
    def _snapshot(room: Room, session: Session, members, history) -> dict:
        return {
            "roomId": room.id,
            "nickname": session.nickname,
            "maxUsers": room.max_occupancy,
            "currentUsers": len(members),
            "users": [m.nickname for m in members if not m.invisible],
            "encryptionKey": room.encryption_key,
            "expiresAt": isoformat(room.expires_at),
            "messages": [m.to_event() for m in history],
        }

    async def _on_send_message(self, payload) -> None:
        session = await self._require_session()
        room_id = self.room_id
        broadcaster = self.coordinator.broadcaster

        def deliver(message: Message) -> None:
            broadcaster.publish(room_id, "new-message", message.to_event())

        try:
            await self.coordinator.ledger.append(
                room_id, session.nickname, payload.text, payload.iv, payload.ttl, on_accept=deliver
            )
        except errors.NotFound:
            # room expired or was reaped after the session check
            await self._drop_to_awaiting_join()
            raise

    async def _on_start_typing(self, payload) -> None:
        session = await self._require_session()
        self.coordinator.broadcaster.publish(
            self.room_id, "user-typing", {"nickname": session.nickname}, exclude=[self.connection_id]
        )

    async def _on_stop_typing(self, payload) -> None:
        session = await self._require_session()
        self.coordinator.broadcaster.publish(
            self.room_id, "user-stop-typing", {"nickname": session.nickname}, exclude=[self.connection_id]
        )

    async def _on_mark_read(self, payload) -> None:
        session = await self._require_session()
        await self.coordinator.ledger.mark_read(payload.messageId, session.nickname, room_id=self.room_id)

    async def _on_toggle_invisible(self, payload) -> None:
        session = await self._require_session()
        updated = await self.coordinator.sessions.set_invisible(session.session_id, payload.isInvisible)
        if updated is not None:
            self._session = updated
        self.coordinator.broadcaster.publish(
            self.room_id,
            "user-invisible",
            {"nickname": session.nickname, "isInvisible": payload.isInvisible},
            exclude=[self.connection_id],
        )

    async def _on_panic(self, payload) -> None:
        session = await self._require_session()
        await self.coordinator.panic.trigger(self.room_id, triggered_by=session.nickname)

    async def _on_ping(self, payload) -> None:
        if self.state is HubState.JOINED:
            await self._require_session()
        self.emit("pong", {"timestamp": _now_iso()})
