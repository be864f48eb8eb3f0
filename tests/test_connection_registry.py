"""
tests.test_connection_registry
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

ConnectionRegistry 单元测试：登记 / 注销、房间索引、心跳超时。
"""
from __future__ import annotations

import pytest

from conftest import FakeClock
from voiceroom.core.errors import ConnectionNotFound, DuplicateConnection
from voiceroom.services.connection_registry import ConnectionRegistry


class TestRegister:

    def test_register_returns_unique_ids(self) -> None:
        registry = ConnectionRegistry()
        a = registry.register(object(), "alice")
        b = registry.register(object(), "alice")

        assert a != b
        assert set(registry.connections_of("alice")) == {a, b}
        assert registry.online_count == 2
        assert registry.is_online("alice")

    def test_single_session_rejects_second_connection(self) -> None:
        registry = ConnectionRegistry(single_session=True)
        registry.register(object(), "alice")

        with pytest.raises(DuplicateConnection):
            registry.register(object(), "alice")

    def test_unknown_connection_raises(self) -> None:
        registry = ConnectionRegistry()
        with pytest.raises(ConnectionNotFound):
            registry.heartbeat("missing")


class TestUnregister:

    def test_unregister_is_idempotent(self) -> None:
        registry = ConnectionRegistry()
        cid = registry.register(object(), "alice")

        conn = registry.unregister(cid)
        assert conn is not None and conn.user_id == "alice"
        assert registry.unregister(cid) is None
        assert not registry.is_online("alice")

    def test_unregister_keeps_room_for_listeners(self) -> None:
        """监听者收到的连接仍带着所在房间，便于补偿离开。"""
        registry = ConnectionRegistry()
        seen: list[str | None] = []
        registry.add_listener(lambda conn: seen.append(conn.room_id))
        cid = registry.register(object(), "alice")
        registry.set_room(cid, "r1")

        registry.unregister(cid)

        assert seen == ["r1"]
        assert registry.connections_in("r1") == []

    def test_listener_failure_does_not_break_unregister(self) -> None:
        registry = ConnectionRegistry()

        def boom(conn) -> None:
            raise RuntimeError("boom")

        registry.add_listener(boom)
        cid = registry.register(object(), "alice")

        assert registry.unregister(cid) is not None
        assert registry.online_count == 0


class TestRoomIndex:

    def test_set_room_moves_connection(self) -> None:
        registry = ConnectionRegistry()
        cid = registry.register(object(), "alice")

        registry.set_room(cid, "r1")
        assert registry.connections_in("r1") == [cid]

        registry.set_room(cid, "r2")
        assert registry.connections_in("r1") == []
        assert registry.connections_in("r2") == [cid]
        assert registry.room_of(cid) == "r2"

    def test_user_connections_in_room(self) -> None:
        registry = ConnectionRegistry()
        a = registry.register(object(), "alice")
        b = registry.register(object(), "alice")
        registry.set_room(a, "r1")

        assert registry.user_connections_in("alice", "r1") == [a]
        registry.set_room(b, "r1")
        assert set(registry.user_connections_in("alice", "r1")) == {a, b}

    def test_set_room_on_unknown_connection_is_ignored(self) -> None:
        registry = ConnectionRegistry()
        registry.set_room("missing", "r1")
        assert registry.connections_in("r1") == []


class TestHeartbeat:

    def test_expired_uses_last_heartbeat(self) -> None:
        clock = FakeClock()
        registry = ConnectionRegistry(clock=clock)
        stale = registry.register(object(), "alice")
        fresh = registry.register(object(), "bob")

        clock.advance(50)
        registry.heartbeat(fresh)
        clock.advance(20)

        expired = [c.connection_id for c in registry.expired(60)]
        assert expired == [stale]
