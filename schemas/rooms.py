import re
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from constants import DEFAULT_MAX_USERS

NICKNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,20}$")
MAX_PASSWORD_LENGTH = 128


def validate_nickname(value: str) -> str:
    value = (value or "").strip()
    if not NICKNAME_PATTERN.match(value):
        raise ValueError("Nickname must be 1-20 letters, numbers, underscores or hyphens")
    return value


class CreateRoomRequest(BaseModel):
    nickname: str
    password: str = Field(..., min_length=6, max_length=MAX_PASSWORD_LENGTH)
    maxUsers: Optional[int] = DEFAULT_MAX_USERS

    normalize_nickname = field_validator("nickname")(validate_nickname)

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        if not (re.search(r"[a-z]", value) and re.search(r"[A-Z]", value) and re.search(r"\d", value)):
            raise ValueError("Password must contain at least one lowercase letter, one uppercase letter, and one number")
        return value


class CreateRoomResponse(BaseModel):
    roomId: str
    sessionId: str
    encryptionKey: str
    expiresAt: str


class JoinRoomRequest(BaseModel):
    nickname: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    normalize_nickname = field_validator("nickname")(validate_nickname)


class JoinRoomResponse(BaseModel):
    sessionId: str
    encryptionKey: str
    expiresAt: str


class RoomInfoResponse(BaseModel):
    roomId: str
    creator: str
    createdAt: str
    expiresAt: str
    userCount: int
    maxUsers: int
