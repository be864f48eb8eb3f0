"""
tests.test_presence
~~~~~~~~~~~~~~~~~~~

PresenceReconciler 单元测试：心跳超时清理、显式断开、多连接与异常隔离。
"""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import FakeClock, drain, make_system, of_type
from voiceroom.core.errors import RoomNotFound
from voiceroom.schemas.events import OutboundEventType as Out
from voiceroom.services.room_system import RoomSystem


async def join(system: RoomSystem, user_id: str, room_id: str = "r1"):
    cid, outbox = system.connect(object(), user_id)
    await system.handle(cid, {"event": "room:join", "room_id": room_id})
    return cid, outbox


class TestReconcile:

    @pytest.mark.asyncio
    async def test_timeout_emits_exactly_one_user_left(self, clock: FakeClock, system: RoomSystem) -> None:
        a, _ = await join(system, "alice")
        b, b_out = await join(system, "bob")
        await system.handle(a, {"event": "seat:request"})
        drain(b_out)

        clock.advance(61)
        await system.handle(b, {"event": "heartbeat"})

        assert await system.reconciler.reconcile_once() == 1
        assert await system.reconciler.reconcile_once() == 0

        events = drain(b_out)
        assert len(of_type(events, Out.ROOM_USER_LEFT)) == 1
        assert of_type(events, Out.ROOM_USER_LEFT)[0].data["reason"] == "timeout"
        assert system.registry.find(a) is None
        assert system.room_snapshot("r1").seated_count == 0

    @pytest.mark.asyncio
    async def test_expired_connection_outbox_is_closed(self, clock: FakeClock, system: RoomSystem) -> None:
        a, a_out = await join(system, "alice")
        clock.advance(61)

        await system.reconciler.reconcile_once()

        # 最后一项是通知发送协程退出的 None
        items = []
        while not a_out.empty():
            items.append(a_out.get_nowait())
        assert items[-1] is None

    @pytest.mark.asyncio
    async def test_other_connection_keeps_membership(self, clock: FakeClock, system: RoomSystem) -> None:
        stale, _ = await join(system, "alice")
        fresh, _ = await join(system, "alice")
        b, b_out = await join(system, "bob")
        drain(b_out)

        clock.advance(61)
        await system.handle(fresh, {"event": "heartbeat"})
        await system.handle(b, {"event": "heartbeat"})
        await system.reconciler.reconcile_once()

        assert system.store.get("r1").is_member("alice")
        assert of_type(drain(b_out), Out.ROOM_USER_LEFT) == []

    @pytest.mark.asyncio
    async def test_cleanup_failure_does_not_stop_loop(self, clock: FakeClock, system: RoomSystem) -> None:
        a, _ = await join(system, "alice", "r1")
        b, _ = await join(system, "bob", "r2")
        clock.advance(61)

        original = system.router.leave_room
        calls: list[str] = []

        async def flaky(user_id: str, room_id: str, *args, **kwargs):
            calls.append(user_id)
            if user_id == "alice":
                raise RoomNotFound("gone")
            return await original(user_id, room_id, *args, **kwargs)

        system.router.leave_room = flaky

        assert await system.reconciler.reconcile_once() == 2
        assert sorted(calls) == ["alice", "bob"]
        assert system.registry.online_count == 0


class TestDisconnect:

    @pytest.mark.asyncio
    async def test_explicit_disconnect_skips_timeout(self, system: RoomSystem) -> None:
        a, _ = await join(system, "alice")
        _, b_out = await join(system, "bob")
        drain(b_out)

        await system.disconnect(a)

        left = of_type(drain(b_out), Out.ROOM_USER_LEFT)
        assert [e.data for e in left] == [{"user_id": "alice", "reason": "disconnect"}]
        assert await system.reconciler.cleanup(a) is False

    @pytest.mark.asyncio
    async def test_direct_unregister_triggers_orphan_leave(self, system: RoomSystem) -> None:
        a, _ = await join(system, "alice")
        _, b_out = await join(system, "bob")
        drain(b_out)

        system.registry.unregister(a)
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert not system.store.get("r1").is_member("alice")
        assert len(of_type(drain(b_out), Out.ROOM_USER_LEFT)) == 1
        await system.reconciler.stop()

    @pytest.mark.asyncio
    async def test_slow_consumer_is_disconnected(self, clock: FakeClock) -> None:
        system = make_system(clock, OUTBOX_SIZE=3)
        a, _ = await join(system, "alice")
        b, _ = await join(system, "bob")
        system.reconciler.cleanup = AsyncMock(wraps=system.reconciler.cleanup)

        await system.handle(b, {"event": "message:send", "content": "hi"})
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        system.reconciler.cleanup.assert_any_await(a, reason="slow_consumer")
        await system.reconciler.stop()

    @pytest.mark.asyncio
    async def test_cleanup_during_pending_join_leaves_no_membership(self, system: RoomSystem) -> None:
        await join(system, "bob")
        a, _ = system.connect(object(), "alice")
        room = system.store.get("r1")

        await room.lock.acquire()
        pending = asyncio.create_task(system.handle(a, {"event": "room:join", "room_id": "r1"}))
        await asyncio.sleep(0)
        await system.reconciler.cleanup(a, "slow_consumer")
        room.lock.release()
        await pending

        assert not room.is_member("alice")
        assert room.consistency_errors() == []
        assert system.registry.find(a) is None

    @pytest.mark.asyncio
    async def test_disconnect_during_pending_seat_request_keeps_order(self, system: RoomSystem) -> None:
        a, _ = await join(system, "alice")
        _, b_out = await join(system, "bob")
        drain(b_out)
        room = system.store.get("r1")

        await room.lock.acquire()
        request = asyncio.create_task(system.handle(a, {"event": "seat:request"}))
        await asyncio.sleep(0)
        disconnect = asyncio.create_task(system.disconnect(a))
        await asyncio.sleep(0)
        room.lock.release()
        await asyncio.gather(request, disconnect)

        events = drain(b_out)
        assert [e.event for e in events[:3]] == [Out.SEAT_UPDATED, Out.SEAT_UPDATED, Out.ROOM_USER_LEFT]
        assert events[0].data["occupant_id"] == "alice"
        assert events[1].data["occupant_id"] is None
        assert events[2].data["user_id"] == "alice"
        seqs = [e.seq for e in events]
        assert seqs == list(range(seqs[0], seqs[0] + len(seqs)))
        assert system.room_snapshot("r1").seated_count == 0
