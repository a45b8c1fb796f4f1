"""Records owned by the coordinator.

RoomStore owns ``Room``, SessionRegistry owns ``Session`` and MessageLedger
owns ``Message``. Records travel to and from the storage backend as plain
dicts (``model_dump()`` / ``model_validate()``); timestamps are epoch seconds.
"""
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field


def isoformat(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class Room(BaseModel):
    id: str
    password_hash: str
    creator: str
    max_occupancy: int
    created_at: float
    expires_at: float
    active: bool = True
    # client-side symmetric key, handed to joiners and never used here
    encryption_key: str
    last_activity: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    def is_live(self, now: float) -> bool:
        return self.active and not self.is_expired(now)


class Session(BaseModel):
    # internal record id; session_id may change on resumption
    id: str
    session_id: str
    room_id: str
    nickname: str
    invisible: bool = False
    joined_at: float
    last_activity: float
    expires_at: float
    active: bool = True
    connection_id: Optional[str] = None

    def is_live(self, now: float) -> bool:
        return self.active and self.expires_at > now


class ReadReceipt(BaseModel):
    nickname: str
    read_at: float


class Message(BaseModel):
    id: str
    room_id: str
    sender: str
    ciphertext: str
    iv: str = ""
    created_at: float
    expires_at: float
    read_by: List[ReadReceipt] = Field(default_factory=list)
    visible: bool = True

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    def has_been_read_by(self, nickname: str) -> bool:
        return any(r.nickname == nickname for r in self.read_by)

    def to_event(self) -> dict:
        """Payload of the ``new-message`` broadcast."""
        return {
            "id": self.id,
            "sender": self.sender,
            "text": self.ciphertext,
            "iv": self.iv,
            "timestamp": isoformat(self.created_at),
            "expiresAt": isoformat(self.expires_at),
        }
