"""
Tests for MessageLedger.
"""
import asyncio

import pytest

from backend import MESSAGES, InMemoryBackend
from conftest import PASSWORD
from errors import InternalError, NotFound, RateLimited, RoomExpired, StorageError, ValidationError
from locks import RoomLocks
from message_ledger import MessageLedger
from rate_limit import SlidingWindowLimiter


class FlakyBackend(InMemoryBackend):
    def __init__(self, failures):
        super().__init__()
        self.failures = failures

    async def create(self, collection, record_id, fields):
        if self.failures > 0:
            self.failures -= 1
            raise StorageError("timeout")
        return await super().create(collection, record_id, fields)


@pytest.fixture
def ledger(backend, clock):
    return MessageLedger(backend, RoomLocks(), SlidingWindowLimiter(30, 60), retention=900, clock=clock)


@pytest.mark.asyncio
async def test_rate_limit_admits_exactly_the_cap(ledger, clock):
    for i in range(30):
        await ledger.append("room", "bob", f"cipher-{i}")
        clock.advance(0.5)

    assert ledger.rate_limit_check("room", "bob") is False
    with pytest.raises(RateLimited):
        await ledger.append("room", "bob", "one too many")
    # another sender in the same room is unaffected
    await ledger.append("room", "alice", "hello")

    clock.advance(60)
    assert ledger.rate_limit_check("room", "bob") is True
    await ledger.append("room", "bob", "allowed again")


@pytest.mark.asyncio
async def test_rejected_message_is_not_stored(ledger, backend):
    ledger.limiter.limit = 1
    await ledger.append("room", "bob", "first")
    with pytest.raises(RateLimited):
        await ledger.append("room", "bob", "second")

    assert len(await backend.find(MESSAGES, room_id="room")) == 1


@pytest.mark.asyncio
async def test_message_ttl_hides_expired_messages(ledger, clock):
    message = await ledger.append("room", "bob", "cipher", ttl=10)
    assert message.expires_at == message.created_at + 10
    assert await ledger.get(message.id) == message

    clock.advance(10)

    assert await ledger.get(message.id) is None
    assert await ledger.history("room") == []


@pytest.mark.asyncio
async def test_ttl_is_clamped_to_retention(ledger):
    message = await ledger.append("room", "bob", "cipher", ttl=100_000)
    assert message.expires_at == message.created_at + 900

    default = await ledger.append("room", "bob", "cipher")
    assert default.expires_at == default.created_at + 900


@pytest.mark.asyncio
async def test_negative_ttl_is_rejected(ledger):
    with pytest.raises(ValidationError):
        await ledger.append("room", "bob", "cipher", ttl=-5)


@pytest.mark.asyncio
async def test_history_is_ordered_and_room_scoped(ledger, clock):
    first = await ledger.append("room", "bob", "one")
    clock.advance(1)
    second = await ledger.append("room", "alice", "two")
    await ledger.append("other-room", "bob", "elsewhere")

    history = await ledger.history("room")

    assert [m.id for m in history] == [first.id, second.id]


@pytest.mark.asyncio
async def test_on_accept_runs_for_every_accepted_message(ledger):
    delivered = []

    messages = await asyncio.gather(
        *(ledger.append("room", "bob", f"cipher-{i}", on_accept=delivered.append) for i in range(5))
    )

    assert sorted(m.id for m in delivered) == sorted(m.id for m in messages)


@pytest.mark.asyncio
async def test_on_accept_not_called_when_rejected(ledger):
    delivered = []
    ledger.limiter.limit = 0
    with pytest.raises(RateLimited):
        await ledger.append("room", "bob", "cipher", on_accept=delivered.append)
    assert delivered == []


@pytest.mark.asyncio
async def test_mark_read_is_idempotent(ledger):
    message = await ledger.append("room", "bob", "cipher")

    await ledger.mark_read(message.id, "alice")
    await ledger.mark_read(message.id, "alice")
    updated = await ledger.mark_read(message.id, "carol")

    assert [r.nickname for r in updated.read_by] == ["alice", "carol"]
    assert [r.nickname for r in (await ledger.get(message.id)).read_by] == ["alice", "carol"]


@pytest.mark.asyncio
async def test_mark_read_concurrently_adds_one_receipt(ledger):
    message = await ledger.append("room", "bob", "cipher")

    await asyncio.gather(*(ledger.mark_read(message.id, "alice") for _ in range(5)))

    assert len((await ledger.get(message.id)).read_by) == 1


@pytest.mark.asyncio
async def test_mark_read_ignores_other_rooms_and_unknown_ids(ledger):
    message = await ledger.append("room", "bob", "cipher")

    assert await ledger.mark_read(message.id, "alice", room_id="other-room") is None
    assert await ledger.mark_read("missing", "alice") is None
    assert (await ledger.get(message.id)).read_by == []


@pytest.mark.asyncio
async def test_wipe_removes_only_that_room(ledger):
    for i in range(3):
        await ledger.append("room", "bob", f"cipher-{i}")
    await ledger.append("other-room", "bob", "keep me")
    wiped = []

    removed = await ledger.wipe("room", on_wiped=wiped.append)

    assert removed == 3
    assert wiped == [3]
    assert await ledger.history("room") == []
    assert len(await ledger.history("other-room")) == 1


@pytest.mark.asyncio
async def test_append_retries_transient_storage_failure(clock):
    ledger = MessageLedger(FlakyBackend(failures=1), RoomLocks(), retention=900, clock=clock)
    message = await ledger.append("room", "bob", "cipher")
    assert await ledger.get(message.id) == message


@pytest.mark.asyncio
async def test_failed_append_does_not_consume_rate_budget(clock):
    ledger = MessageLedger(
        FlakyBackend(failures=2), RoomLocks(), SlidingWindowLimiter(1, 60), retention=900, clock=clock
    )
    with pytest.raises(InternalError):
        await ledger.append("room", "bob", "cipher")

    assert ledger.rate_limit_check("room", "bob") is True


@pytest.mark.asyncio
async def test_message_never_outlives_its_room(coordinator, clock):
    room, _ = await coordinator.rooms.create("alice", PASSWORD, 5, ttl=60)
    clock.advance(30)

    message = await coordinator.ledger.append(room.id, "alice", "cipher")

    assert message.expires_at == room.expires_at


@pytest.mark.asyncio
async def test_append_refused_once_room_expires_or_is_reaped(coordinator, clock):
    room, _ = await coordinator.rooms.create("alice", PASSWORD, 5, ttl=60)
    await coordinator.sessions.join(room.id, "bob", PASSWORD)

    clock.advance(61)
    with pytest.raises(RoomExpired):
        await coordinator.ledger.append(room.id, "bob", "too late")

    clock.advance(3600)
    report = await coordinator.reaper.sweep()
    assert report.rooms_deleted == 1

    with pytest.raises(NotFound):
        await coordinator.ledger.append(room.id, "bob", "after the sweep")
    assert await coordinator.backend.find(MESSAGES, room_id=room.id) == []
