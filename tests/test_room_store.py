"""
tests.test_room_store
~~~~~~~~~~~~~~~~~~~~~

RoomSessionStore 单元测试：房间级串行修改、广播序号、异常回滚、空房回收。
"""
from __future__ import annotations

import asyncio

import pytest

from conftest import FakeClock, drain
from voiceroom.core.errors import ConflictError, RoomClosed, RoomNotFound
from voiceroom.schemas.events import OutboundEventType
from voiceroom.schemas.rooms import Role
from voiceroom.services.broadcaster import RoomBroadcaster
from voiceroom.services.connection_registry import ConnectionRegistry
from voiceroom.services.room_store import Member, Room, RoomEmitter, RoomSessionStore


def build_store(clock: FakeClock | None = None) -> tuple[RoomSessionStore, ConnectionRegistry, RoomBroadcaster]:
    registry = ConnectionRegistry()
    broadcaster = RoomBroadcaster(registry)
    store = RoomSessionStore(registry, broadcaster, seat_count=2, idle_grace=10, clock=clock or FakeClock())
    return store, registry, broadcaster


def subscribe(registry: ConnectionRegistry, broadcaster: RoomBroadcaster, room_id: str) -> asyncio.Queue:
    cid = registry.register(object(), f"watcher-{room_id}")
    registry.set_room(cid, room_id)
    return broadcaster.attach(cid)


class TestApplyMutation:

    @pytest.mark.asyncio
    async def test_missing_room_without_create(self) -> None:
        store, _, _ = build_store()
        with pytest.raises(RoomNotFound):
            await store.apply_mutation("nope", lambda room, emit: None)

    @pytest.mark.asyncio
    async def test_create_builds_room_with_seats(self) -> None:
        store, _, _ = build_store()
        await store.apply_mutation("r1", lambda room, emit: None, create=True)

        room = store.get("r1")
        assert room.capacity == 2
        assert [s.index for s in room.seats] == [0, 1]

    @pytest.mark.asyncio
    async def test_broadcasts_get_consecutive_seq(self) -> None:
        store, registry, broadcaster = build_store()
        await store.apply_mutation("r1", lambda room, emit: None, create=True)
        outbox = subscribe(registry, broadcaster, "r1")

        def _two(room: Room, emit: RoomEmitter) -> None:
            emit.broadcast(OutboundEventType.MESSAGE_RECEIVED, {"n": 1})
            emit.broadcast(OutboundEventType.MESSAGE_RECEIVED, {"n": 2})

        await store.apply_mutation("r1", _two)
        await store.apply_mutation("r1", _two)

        seqs = [e.seq for e in drain(outbox)]
        assert seqs == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_failed_mutation_emits_nothing(self) -> None:
        """修改函数抛错时，之前登记的事件全部丢弃。"""
        store, registry, broadcaster = build_store()
        await store.apply_mutation("r1", lambda room, emit: None, create=True)
        outbox = subscribe(registry, broadcaster, "r1")

        def _fail(room: Room, emit: RoomEmitter) -> None:
            emit.broadcast(OutboundEventType.MESSAGE_RECEIVED, {"n": 1})
            raise ConflictError("nope")

        with pytest.raises(ConflictError):
            await store.apply_mutation("r1", _fail)

        assert drain(outbox) == []
        assert store.get("r1").seq == 0

    @pytest.mark.asyncio
    async def test_mutations_on_same_room_are_serialized(self) -> None:
        store, _, _ = build_store()
        await store.apply_mutation("r1", lambda room, emit: None, create=True)
        trace: list[str] = []

        async def _slow(name: str) -> None:
            async def _fn(room: Room, emit: RoomEmitter) -> None:
                trace.append(f"{name}:start")
                await asyncio.sleep(0)
                await asyncio.sleep(0)
                trace.append(f"{name}:end")

            await store.apply_mutation("r1", _fn)

        await asyncio.gather(_slow("a"), _slow("b"))

        assert trace == ["a:start", "a:end", "b:start", "b:end"]


class TestClose:

    @pytest.mark.asyncio
    async def test_close_broadcasts_then_evicts(self) -> None:
        store, registry, broadcaster = build_store()

        def _join(room: Room, emit: RoomEmitter) -> None:
            room.members["alice"] = Member("alice", Role.OWNER)
            room.owner_id = "alice"
            room.seats[0].occupant_id = "alice"

        await store.apply_mutation("r1", _join, create=True)
        outbox = subscribe(registry, broadcaster, "r1")

        await store.close("r1", reason="bye")

        events = drain(outbox)
        assert [e.event for e in events] == [OutboundEventType.ROOM_CLOSED]
        assert events[0].data == {"room_id": "r1", "reason": "bye"}

        room = store.get("r1")
        assert room.closed and room.is_empty
        assert room.owner_id is None
        assert all(s.occupant_id is None for s in room.seats)
        assert registry.connections_in("r1") == []

        with pytest.raises(RoomClosed):
            await store.close("r1")


class TestEvictIdle:

    @pytest.mark.asyncio
    async def test_empty_room_evicted_after_grace(self) -> None:
        clock = FakeClock()
        store, _, _ = build_store(clock)
        await store.apply_mutation("r1", lambda room, emit: None, create=True)

        clock.advance(5)
        assert store.evict_idle() == []
        clock.advance(6)
        assert store.evict_idle() == ["r1"]
        assert "r1" not in store

    @pytest.mark.asyncio
    async def test_occupied_room_is_kept(self) -> None:
        clock = FakeClock()
        store, _, _ = build_store(clock)

        def _join(room: Room, emit: RoomEmitter) -> None:
            room.members["alice"] = Member("alice", Role.OWNER)
            room.owner_id = "alice"

        await store.apply_mutation("r1", _join, create=True)
        clock.advance(100)

        assert store.evict_idle() == []


class TestConsistency:

    def test_detects_non_member_occupant(self) -> None:
        store, _, _ = build_store()
        room = store.get_or_create("r1")
        room.seats[0].occupant_id = "ghost"

        errors = room.consistency_errors()
        assert any("ghost" in e for e in errors)

    def test_successor_is_highest_role_then_earliest(self) -> None:
        store, _, _ = build_store()
        room = store.get_or_create("r1")
        room.members["m1"] = Member("m1", Role.MEMBER, joined_at=1)
        room.members["a1"] = Member("a1", Role.ADMIN, joined_at=2)
        room.members["a2"] = Member("a2", Role.ADMIN, joined_at=3)

        assert room.pick_successor().user_id == "a1"
