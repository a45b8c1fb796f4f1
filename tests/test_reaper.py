"""
Tests for the expiry reaper.
"""
import asyncio

import pytest

from backend import MESSAGES, ROOMS, InMemoryBackend
from conftest import PASSWORD
from coordinator import build_coordinator
from errors import NotFound, RoomExpired, StorageError


class PoisonedBackend(InMemoryBackend):
    """Fails to delete records whose id starts with ``poison``."""

    async def delete(self, collection, *record_ids):
        if any(rid.startswith("poison") for rid in record_ids):
            raise StorageError("delete refused")
        return await super().delete(collection, *record_ids)


def expired_message(record_id, now):
    return {
        "room_id": "room",
        "sender": "bob",
        "ciphertext": "cipher",
        "iv": "",
        "created_at": now - 20,
        "expires_at": now - 10,
        "read_by": [],
        "visible": True,
    }


@pytest.mark.asyncio
async def test_sweep_removes_expired_messages_and_sessions(coordinator, clock):
    room, _ = await coordinator.rooms.create("alice", PASSWORD, 5)
    await coordinator.sessions.join(room.id, "bob", PASSWORD)
    short = await coordinator.ledger.append(room.id, "bob", "short-lived", ttl=10)
    await coordinator.ledger.append(room.id, "bob", "long-lived")

    clock.advance(10)
    report = await coordinator.reaper.sweep()

    assert report.messages_deleted == 1
    assert report.sessions_deleted == 0
    assert report.failures == 0
    assert await coordinator.backend.get(MESSAGES, short.id) is None
    assert len(await coordinator.ledger.history(room.id)) == 1


@pytest.mark.asyncio
async def test_room_expires_then_is_deleted_after_grace(coordinator, clock):
    room, _ = await coordinator.rooms.create("alice", PASSWORD, 5)
    await coordinator.sessions.join(room.id, "bob", PASSWORD)
    await coordinator.ledger.append(room.id, "bob", "cipher")

    clock.advance(900)
    report = await coordinator.reaper.sweep()

    assert report.messages_deleted == 1
    assert report.sessions_deleted == 1
    assert report.rooms_expired == 1
    assert report.rooms_deleted == 0
    assert (await coordinator.backend.get(ROOMS, room.id))["active"] is False
    with pytest.raises(RoomExpired):
        await coordinator.rooms.lookup(room.id)

    # a second sweep inside the grace window leaves the room alone
    report = await coordinator.reaper.sweep()
    assert report.rooms_expired == 0
    assert report.rooms_deleted == 0

    clock.advance(3600)
    report = await coordinator.reaper.sweep()

    assert report.rooms_deleted == 1
    with pytest.raises(NotFound) as exc_info:
        await coordinator.rooms.lookup(room.id)
    assert not isinstance(exc_info.value, RoomExpired)


@pytest.mark.asyncio
async def test_room_deletion_releases_in_process_state(coordinator, clock):
    room, _ = await coordinator.rooms.create("alice", PASSWORD, 5)
    await coordinator.ledger.append(room.id, "bob", "cipher")
    coordinator.broadcaster.subscribe(room.id, "conn-1", asyncio.Queue())

    clock.advance(900 + 3600)
    await coordinator.reaper.sweep()

    assert coordinator.broadcaster.subscriber_count(room.id) == 0
    assert len(coordinator.locks) == 0
    assert coordinator.ledger.limiter._events == {}


@pytest.mark.asyncio
async def test_one_failing_record_does_not_stop_the_sweep(hasher, clock):
    backend = PoisonedBackend()
    coordinator = build_coordinator(backend, hasher=hasher, clock=clock)
    now = clock()
    for record_id in ("ok-1", "poison-1", "ok-2"):
        await backend.create(MESSAGES, record_id, expired_message(record_id, now))

    report = await coordinator.reaper.sweep()

    assert report.messages_deleted == 2
    assert report.failures == 1
    assert await backend.get(MESSAGES, "poison-1") is not None
    assert await backend.get(MESSAGES, "ok-1") is None


@pytest.mark.asyncio
async def test_sweep_on_empty_store(coordinator):
    report = await coordinator.reaper.sweep()
    assert report.messages_deleted == report.sessions_deleted == report.rooms_deleted == report.failures == 0


@pytest.mark.asyncio
async def test_start_and_stop(backend, hasher, clock):
    coordinator = build_coordinator(backend, hasher=hasher, clock=clock, reaper_interval=0.01)

    coordinator.reaper.start()
    await asyncio.sleep(0.05)
    await coordinator.reaper.stop()

    assert coordinator.reaper._task is None
