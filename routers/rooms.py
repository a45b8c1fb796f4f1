from fastapi import APIRouter, Depends, Request

from constants import DEFAULT_MAX_USERS
from coordinator import Coordinator
from logging_config import get_logger
from models import isoformat
from schemas.rooms import (
    CreateRoomRequest,
    CreateRoomResponse,
    JoinRoomRequest,
    JoinRoomResponse,
    RoomInfoResponse,
)

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/api/rooms", tags=["rooms"])


def get_coordinator(request: Request) -> Coordinator:
    return request.app.state.coordinator


def _client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@rooms_router.post("", response_model=CreateRoomResponse)
async def create_room(room: CreateRoomRequest, request: Request, coordinator: Coordinator = Depends(get_coordinator)):
    # Body: { "nickname": "alice", "password": "Secret1", "maxUsers": 10 }
    # Response 200: { "roomId", "sessionId", "encryptionKey", "expiresAt" }
    coordinator.create_throttle.check(_client_host(request))
    logger.info(f"Room creation request from {_client_host(request)}, nickname: {room.nickname}, max_users: {room.maxUsers}")
    max_users = room.maxUsers if room.maxUsers is not None else DEFAULT_MAX_USERS

    new_room, encryption_key = await coordinator.rooms.create(room.nickname, room.password, max_users)
    # the creator holds the first seat
    session = await coordinator.sessions.admit(new_room, room.nickname)

    logger.info(f"Room {new_room.id} created successfully: expires_at={isoformat(new_room.expires_at)}, max_users={new_room.max_occupancy}")
    return CreateRoomResponse(
        roomId=new_room.id,
        sessionId=session.session_id,
        encryptionKey=encryption_key,
        expiresAt=isoformat(new_room.expires_at),
    )


@rooms_router.post("/{room_id}/join", response_model=JoinRoomResponse)
async def join_room(
    room_id: str,
    join_room_request: JoinRoomRequest,
    request: Request,
    coordinator: Coordinator = Depends(get_coordinator),
):
    # Body: { "nickname": "bob", "password": "..." }
    # Response 200: { "sessionId", "encryptionKey", "expiresAt" }
    # - Client then opens /ws and sends join-room with this sessionId to resume the session.
    logger.info(f"Join room request for {room_id} from {_client_host(request)}, nickname: {join_room_request.nickname}")

    coordinator.join_throttle.check(_client_host(request))
    room = await coordinator.sessions.authenticate(room_id, join_room_request.password)
    session = await coordinator.sessions.admit(room, join_room_request.nickname)

    logger.info(f"Join room successful for {room_id}: {join_room_request.nickname}")
    return JoinRoomResponse(
        sessionId=session.session_id,
        encryptionKey=room.encryption_key,
        expiresAt=isoformat(room.expires_at),
    )


@rooms_router.get("/{room_id}", response_model=RoomInfoResponse)
async def get_room_info(room_id: str, request: Request, coordinator: Coordinator = Depends(get_coordinator)):
    """
    Public room details. Never includes the password hash or the client key.

    Returns:
    - roomId: Unique room identifier
    - creator: Creator's nickname
    - createdAt / expiresAt: ISO timestamps
    - userCount: Current number of active sessions
    - maxUsers: Maximum users allowed
    """
    logger.info(f"Room details request for {room_id} from {_client_host(request)}")

    room = await coordinator.rooms.lookup(room_id)
    user_count = await coordinator.rooms.occupancy(room_id)

    logger.info(f"Room details retrieved for {room_id}: {user_count}/{room.max_occupancy} users online")
    return RoomInfoResponse(
        roomId=room.id,
        creator=room.creator,
        createdAt=isoformat(room.created_at),
        expiresAt=isoformat(room.expires_at),
        userCount=user_count,
        maxUsers=room.max_occupancy,
    )
