"""
tests.test_seat_allocator
~~~~~~~~~~~~~~~~~~~~~~~~~

SeatAllocator 单元测试：优先麦位、回退、占满、重复上麦、释放与锁麦。
"""
from __future__ import annotations

import asyncio

import pytest

from voiceroom.core.errors import (
    AlreadySeated,
    NoSeatsAvailable,
    NotAMember,
    SeatOccupied,
    ValidationError,
)
from voiceroom.schemas.rooms import Role
from voiceroom.services.broadcaster import RoomBroadcaster
from voiceroom.services.connection_registry import ConnectionRegistry
from voiceroom.services.room_store import Member, Room, RoomEmitter, RoomSessionStore
from voiceroom.services.seat_allocator import SeatAllocator


def build(seat_count: int = 2, members: tuple[str, ...] = ("alice", "bob", "carol")) -> tuple[SeatAllocator, Room]:
    registry = ConnectionRegistry()
    store = RoomSessionStore(registry, RoomBroadcaster(registry), seat_count=seat_count)
    room = store.get_or_create("r1")
    for i, user_id in enumerate(members):
        room.members[user_id] = Member(user_id, Role.OWNER if i == 0 else Role.MEMBER, joined_at=i)
    room.owner_id = members[0] if members else None
    return SeatAllocator(store), room


class TestAllocate:

    def test_preferred_seat_when_free(self) -> None:
        allocator, room = build()
        seat = allocator.allocate(room, "alice", preferred_index=1)
        assert seat.index == 1
        assert room.seats[1].occupant_id == "alice"

    def test_falls_back_to_lowest_free_seat(self) -> None:
        allocator, room = build()
        allocator.allocate(room, "alice", preferred_index=0)
        seat = allocator.allocate(room, "bob", preferred_index=0)
        assert seat.index == 1

    def test_full_room_rejects(self) -> None:
        allocator, room = build()
        allocator.allocate(room, "alice")
        allocator.allocate(room, "bob")
        with pytest.raises(NoSeatsAvailable):
            allocator.allocate(room, "carol")

    def test_already_seated(self) -> None:
        allocator, room = build()
        allocator.allocate(room, "alice")
        with pytest.raises(AlreadySeated):
            allocator.allocate(room, "alice")

    def test_non_member(self) -> None:
        allocator, room = build()
        with pytest.raises(NotAMember):
            allocator.allocate(room, "mallory")

    def test_out_of_range_index(self) -> None:
        allocator, room = build()
        with pytest.raises(ValidationError):
            allocator.allocate(room, "alice", preferred_index=5)

    def test_taking_seat_lowers_hand(self) -> None:
        allocator, room = build()
        room.members["bob"].hand_raised = True
        allocator.allocate(room, "bob")
        assert room.members["bob"].hand_raised is False

    def test_locked_seat_is_skipped(self) -> None:
        allocator, room = build()
        allocator.lock(room, 0)
        assert allocator.allocate(room, "alice", preferred_index=0).index == 1


class TestAssign:

    def test_assign_occupied_seat_fails(self) -> None:
        allocator, room = build()
        allocator.assign(room, "alice", 0)
        with pytest.raises(SeatOccupied):
            allocator.assign(room, "bob", 0)

    def test_lock_occupied_seat_fails(self) -> None:
        allocator, room = build()
        allocator.assign(room, "alice", 0)
        with pytest.raises(SeatOccupied):
            allocator.lock(room, 0)


class TestRelease:

    def test_release_resets_flags(self) -> None:
        allocator, room = build()
        seat = allocator.allocate(room, "alice")
        seat.muted = True
        seat.speaking = True

        released = allocator.release(room, "alice")

        assert released is seat
        assert seat.occupant_id is None
        assert not seat.muted and not seat.speaking

    def test_release_without_seat_is_noop(self) -> None:
        allocator, room = build()
        assert allocator.release(room, "alice") is None


class TestLockedEntryPoints:

    @pytest.mark.asyncio
    async def test_concurrent_requests_for_last_seat(self) -> None:
        """两个用户同时抢最后一个麦位：恰好一个成功，一个 NoSeatsAvailable。"""
        allocator, room = build(seat_count=1, members=("alice", "bob"))

        results = await asyncio.gather(
            allocator.request_seat("r1", "alice"),
            allocator.request_seat("r1", "bob"),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, int)]
        failures = [r for r in results if isinstance(r, NoSeatsAvailable)]
        assert successes == [0]
        assert len(failures) == 1
        assert room.seats[0].occupant_id in {"alice", "bob"}

    @pytest.mark.asyncio
    async def test_release_twice_is_idempotent(self) -> None:
        allocator, room = build()
        await allocator.request_seat("r1", "alice")

        assert await allocator.release_seat("r1", "alice") == 0
        assert await allocator.release_seat("r1", "alice") is None
        assert room.consistency_errors() == []

    @pytest.mark.asyncio
    async def test_request_seat_broadcasts_update(self) -> None:
        allocator, room = build()

        def _noop(room: Room, emit: RoomEmitter) -> None:
            pass

        await allocator.store.apply_mutation("r1", _noop)
        before = room.seq
        await allocator.request_seat("r1", "alice")
        assert room.seq == before + 1
