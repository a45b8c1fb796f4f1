from datetime import datetime, timezone
from typing import Optional

from broadcast import RoomBroadcaster
from logging_config import get_logger
from message_ledger import MessageLedger

logger = get_logger(__name__)

PANIC_NOTICE = "All messages have been cleared due to panic mode"


class PanicController:
    """Erases a room's messages and tells every subscriber to drop local history.

    The room and its sessions stay active.
    """

    def __init__(self, ledger: MessageLedger, broadcaster: RoomBroadcaster):
        self.ledger = ledger
        self.broadcaster = broadcaster

    async def trigger(self, room_id: str, triggered_by: Optional[str] = None) -> int:
        def notify(removed: int) -> None:
            self.broadcaster.publish(room_id, "panic-mode", {
                "message": PANIC_NOTICE,
                "wiped": removed,
                "triggeredBy": triggered_by,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            })

        removed = await self.ledger.wipe(room_id, on_wiped=notify)
        logger.warning(f"Panic wipe in room {room_id} by {triggered_by or 'unknown'}: {removed} messages removed")
        return removed
