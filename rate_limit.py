"""Sliding-window rate limiting for chat messages and the password-gated REST endpoints."""
import time
from collections import deque
from typing import Callable, Deque, Dict, Tuple

from constants import RATE_LIMIT_MESSAGES, RATE_LIMIT_WINDOW_SECONDS
from errors import RateLimited
from logging_config import get_logger

logger = get_logger(__name__)


class SlidingWindowLimiter:
    """Admits at most ``limit`` events per (scope, key) in any trailing window.

    The message ledger uses (room id, sender); request throttles use
    (endpoint scope, client address).
    """

    def __init__(self, limit: int = RATE_LIMIT_MESSAGES, window: float = RATE_LIMIT_WINDOW_SECONDS):
        self.limit = limit
        self.window = window
        self._events: Dict[Tuple[str, str], Deque[float]] = {}

    def _trim(self, key: Tuple[str, str], now: float) -> Deque[float]:
        events = self._events.get(key)
        if events is None:
            events = self._events[key] = deque()
        while events and events[0] <= now - self.window:
            events.popleft()
        return events

    def allows(self, room_id: str, sender: str, now: float) -> bool:
        return len(self._trim((room_id, sender), now)) < self.limit

    def record(self, room_id: str, sender: str, now: float) -> None:
        self._trim((room_id, sender), now).append(now)

    def prune(self, now: float) -> int:
        stale = [key for key in self._events if not self._trim(key, now)]
        for key in stale:
            del self._events[key]
        return len(stale)

    def forget_room(self, room_id: str) -> None:
        for key in [k for k in self._events if k[0] == room_id]:
            del self._events[key]


class RequestThrottle:
    """Per-client attempt budget for one endpoint (room creation, password checks).

    Every attempt counts, successful or not.
    """

    def __init__(
        self,
        scope: str,
        limit: int,
        window: float,
        message: str,
        clock: Callable[[], float] = time.time,
    ):
        self.scope = scope
        self.limiter = SlidingWindowLimiter(limit, window)
        self.message = message
        self.clock = clock

    def check(self, client: str) -> None:
        now = self.clock()
        if not self.limiter.allows(self.scope, client, now):
            logger.warning(f"Throttled {self.scope} attempt from {client}")
            raise RateLimited(f"{client} exceeded {self.limiter.limit} {self.scope} attempts", public_message=self.message)
        self.limiter.record(self.scope, client, now)

    def prune(self) -> int:
        return self.limiter.prune(self.clock())
