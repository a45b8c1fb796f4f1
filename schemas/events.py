"""Payloads of inbound websocket events.

Frames look like ``{"event": "send-message", "data": {...}}``; ``data`` is
validated against the model registered for the event name.
"""
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from constants import MAX_MESSAGE_LENGTH
from schemas.rooms import MAX_PASSWORD_LENGTH, validate_nickname


class JoinRoomEvent(BaseModel):
    roomId: str = Field(..., min_length=1, max_length=64)
    nickname: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    sessionId: Optional[str] = Field(None, max_length=128)

    normalize_nickname = field_validator("nickname")(validate_nickname)


class SendMessageEvent(BaseModel):
    # ciphertext, opaque to the server
    text: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)
    iv: str = Field("", max_length=256)
    ttl: Optional[float] = Field(None, ge=0)

    @field_validator("text")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message cannot be empty")
        return value


class MarkReadEvent(BaseModel):
    messageId: str = Field(..., min_length=1, max_length=128)


class ToggleInvisibleEvent(BaseModel):
    isInvisible: bool


class EmptyEvent(BaseModel):
    pass


EVENT_SCHEMAS = {
    "join-room": JoinRoomEvent,
    "send-message": SendMessageEvent,
    "start-typing": EmptyEvent,
    "stop-typing": EmptyEvent,
    "mark-read": MarkReadEvent,
    "toggle-invisible": ToggleInvisibleEvent,
    "panic-mode": EmptyEvent,
    "ping": EmptyEvent,
}

# events that require the Joined state
ROOM_EVENTS = frozenset(EVENT_SCHEMAS) - {"join-room", "ping"}
