"""In-process room broadcast topics.

Each subscriber is a bounded asyncio.Queue owned by one connection. Publishing
is synchronous (``put_nowait``), so a publish is never interleaved with
another one and unsubscribing stops delivery immediately.
"""
import asyncio
from typing import Dict, Iterable, Optional

from constants import OUTBOUND_QUEUE_SIZE
from logging_config import get_logger

logger = get_logger(__name__)


def make_frame(event: str, data: Optional[dict] = None) -> dict:
    return {"event": event, "data": data or {}}


def new_outbox(maxsize: int = OUTBOUND_QUEUE_SIZE) -> asyncio.Queue:
    return asyncio.Queue(maxsize=maxsize)


class RoomBroadcaster:
    def __init__(self):
        # Format: {room_id: {connection_id: queue}}
        self.room_connections: Dict[str, Dict[str, asyncio.Queue]] = {}

    def subscribe(self, room_id: str, connection_id: str, outbox: asyncio.Queue) -> None:
        self.room_connections.setdefault(room_id, {})[connection_id] = outbox
        logger.debug(f"Connection {connection_id} subscribed to room {room_id} ({len(self.room_connections[room_id])} local)")

    def unsubscribe(self, room_id: str, connection_id: str) -> None:
        subscribers = self.room_connections.get(room_id)
        if not subscribers:
            return
        subscribers.pop(connection_id, None)
        if not subscribers:
            del self.room_connections[room_id]
            logger.debug(f"No more subscribers in room {room_id}")

    def publish(self, room_id: str, event: str, data: Optional[dict] = None, exclude: Iterable[str] = ()) -> int:
        """Queue a frame for every subscriber of the room. Returns the number reached."""
        subscribers = self.room_connections.get(room_id)
        if not subscribers:
            return 0
        excluded = set(exclude)
        frame = make_frame(event, data)
        delivered = 0
        for connection_id, outbox in list(subscribers.items()):
            if connection_id in excluded:
                continue
            try:
                outbox.put_nowait(frame)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Outbox full for connection {connection_id} in room {room_id}, dropping {event}")
        logger.debug(f"Published {event} to {delivered} connections in room {room_id}")
        return delivered

    def subscriber_count(self, room_id: str) -> int:
        return len(self.room_connections.get(room_id, {}))

    def drop_room(self, room_id: str) -> None:
        self.room_connections.pop(room_id, None)
