import time
from dataclasses import dataclass
from typing import Callable, Optional

from backend import StorageBackend
from broadcast import RoomBroadcaster
from constants import (
    CREATE_RATE_LIMIT,
    CREATE_RATE_WINDOW_SECONDS,
    IDLE_TIMEOUT_SECONDS,
    JOIN_RATE_LIMIT,
    JOIN_RATE_WINDOW_SECONDS,
    MESSAGE_TTL_SECONDS,
    RATE_LIMIT_MESSAGES,
    RATE_LIMIT_WINDOW_SECONDS,
    REAPER_INTERVAL_SECONDS,
    ROOM_GRACE_SECONDS,
    ROOM_TTL_SECONDS,
    SESSION_TTL_SECONDS,
)
from locks import RoomLocks
from message_ledger import MessageLedger
from panic import PanicController
from rate_limit import RequestThrottle, SlidingWindowLimiter
from reaper import ExpiryReaper
from room_store import RoomStore
from security import BcryptHasher, PasswordHasher
from session_registry import SessionRegistry

CREATE_THROTTLED_MESSAGE = "Too many room creations. Please try again later."
JOIN_THROTTLED_MESSAGE = "Too many authentication attempts. Please try again later."


@dataclass
class Coordinator:
    """Every stateful component, built once per process at startup."""

    backend: StorageBackend
    rooms: RoomStore
    sessions: SessionRegistry
    ledger: MessageLedger
    broadcaster: RoomBroadcaster
    panic: PanicController
    reaper: ExpiryReaper
    locks: RoomLocks
    create_throttle: RequestThrottle
    join_throttle: RequestThrottle
    idle_timeout: float = IDLE_TIMEOUT_SECONDS


def build_coordinator(
    backend: StorageBackend,
    hasher: Optional[PasswordHasher] = None,
    room_ttl: int = ROOM_TTL_SECONDS,
    session_ttl: int = SESSION_TTL_SECONDS,
    message_ttl: int = MESSAGE_TTL_SECONDS,
    rate_limit: int = RATE_LIMIT_MESSAGES,
    rate_window: float = RATE_LIMIT_WINDOW_SECONDS,
    create_limit: int = CREATE_RATE_LIMIT,
    create_window: float = CREATE_RATE_WINDOW_SECONDS,
    join_limit: int = JOIN_RATE_LIMIT,
    join_window: float = JOIN_RATE_WINDOW_SECONDS,
    reaper_interval: float = REAPER_INTERVAL_SECONDS,
    room_grace: float = ROOM_GRACE_SECONDS,
    idle_timeout: float = IDLE_TIMEOUT_SECONDS,
    clock: Callable[[], float] = time.time,
) -> Coordinator:
    locks = RoomLocks()
    broadcaster = RoomBroadcaster()
    rooms = RoomStore(backend, hasher or BcryptHasher(), room_ttl=room_ttl, clock=clock)
    sessions = SessionRegistry(backend, rooms, locks, session_ttl=session_ttl, clock=clock)
    ledger = MessageLedger(
        backend, locks, SlidingWindowLimiter(rate_limit, rate_window), retention=message_ttl, clock=clock, rooms=rooms
    )
    create_throttle = RequestThrottle("create", create_limit, create_window, CREATE_THROTTLED_MESSAGE, clock=clock)
    join_throttle = RequestThrottle("join", join_limit, join_window, JOIN_THROTTLED_MESSAGE, clock=clock)
    reaper = ExpiryReaper(
        backend, ledger, broadcaster, locks, reaper_interval, room_grace,
        clock=clock, throttles=(create_throttle, join_throttle),
    )
    return Coordinator(
        backend=backend,
        rooms=rooms,
        sessions=sessions,
        ledger=ledger,
        broadcaster=broadcaster,
        panic=PanicController(ledger, broadcaster),
        reaper=reaper,
        locks=locks,
        create_throttle=create_throttle,
        join_throttle=join_throttle,
        idle_timeout=idle_timeout,
    )
