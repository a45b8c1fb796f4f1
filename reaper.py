"""Periodic expiry sweep for messages, sessions and rooms.

Only per-record operations are used and no lock is held across the store,
so a sweep never stalls connection handling. A failure on one record is
logged and counted; the rest of the sweep carries on.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from backend import MESSAGES, ROOMS, SESSIONS, StorageBackend
from broadcast import RoomBroadcaster
from constants import REAPER_INTERVAL_SECONDS, ROOM_GRACE_SECONDS
from locks import RoomLocks
from logging_config import get_logger
from message_ledger import MessageLedger
from rate_limit import RequestThrottle

logger = get_logger(__name__)


@dataclass
class SweepReport:
    messages_deleted: int = 0
    sessions_deleted: int = 0
    rooms_expired: int = 0
    rooms_deleted: int = 0
    failures: int = 0


class ExpiryReaper:
    def __init__(
        self,
        backend: StorageBackend,
        ledger: MessageLedger,
        broadcaster: RoomBroadcaster,
        locks: RoomLocks,
        interval: float = REAPER_INTERVAL_SECONDS,
        room_grace: float = ROOM_GRACE_SECONDS,
        clock: Callable[[], float] = time.time,
        throttles: Iterable[RequestThrottle] = (),
    ):
        self.backend = backend
        self.ledger = ledger
        self.broadcaster = broadcaster
        self.locks = locks
        self.interval = interval
        self.room_grace = room_grace
        self.clock = clock
        self.throttles = list(throttles)
        self._task: Optional[asyncio.Task] = None

    async def sweep(self) -> SweepReport:
        now = self.clock()
        report = SweepReport()

        report.messages_deleted, failed = await self.backend.delete_expired(MESSAGES, now)
        report.failures += failed
        report.sessions_deleted, failed = await self.backend.delete_expired(SESSIONS, now)
        report.failures += failed

        for record in await self.backend.select_expired(ROOMS, now):
            room_id = record["id"]
            try:
                if record["expires_at"] + self.room_grace <= now:
                    report.rooms_deleted += await self.backend.delete(ROOMS, room_id)
                    self._release_room(room_id)
                elif record.get("active", True):
                    await self.backend.update_fields(ROOMS, room_id, {"active": False})
                    report.rooms_expired += 1
            except Exception as e:
                report.failures += 1
                logger.error(f"Failed to expire room {room_id}: {e}", exc_info=True)

        self.ledger.prune_rate_windows()
        for throttle in self.throttles:
            throttle.prune()
        logger.info(
            f"Expiry sweep: {report.messages_deleted} messages, {report.sessions_deleted} sessions deleted, "
            f"{report.rooms_expired} rooms expired, {report.rooms_deleted} rooms deleted, {report.failures} failures"
        )
        return report

    def _release_room(self, room_id: str) -> None:
        self.ledger.forget_room(room_id)
        self.broadcaster.drop_room(room_id)
        self.locks.discard(room_id)

    async def _run(self) -> None:
        logger.info(f"Expiry reaper started, interval {self.interval}s")
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Expiry sweep failed: {e}", exc_info=True)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expiry reaper stopped")
