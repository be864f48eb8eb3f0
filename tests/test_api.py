"""
tests.test_api
~~~~~~~~~~~~~~

REST 接口与 WebSocket 端点测试。

REST 通过 ``httpx.ASGITransport`` 直接调用应用（不触发 lifespan，
``RoomSystem`` 手动挂到 ``app.state``）；WebSocket 端点使用 mock 连接对象，
避开 TestClient 的兼容性问题。
"""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi import WebSocket, WebSocketDisconnect

from conftest import FakeClock, make_system
from voiceroom.api.ws import WS_CLOSE_DUPLICATE, WS_CLOSE_UNAUTHORIZED, websocket_room_endpoint
from voiceroom.main import app
from voiceroom.services.room_system import RoomSystem


def client_for(system: RoomSystem) -> httpx.AsyncClient:
    app.state.room_system = system
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


async def populate(system: RoomSystem) -> None:
    for user_id in ("alice", "bob"):
        cid, _ = system.connect(object(), user_id)
        await system.handle(cid, {"event": "room:join", "room_id": "r1"})
        await system.handle(cid, {"event": "seat:request"})


# ── REST ──────────────────────────────────────────────────────────────

class TestRestApi:

    @pytest.mark.asyncio
    async def test_health(self, system: RoomSystem) -> None:
        async with client_for(system) as client:
            resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_room_list_and_snapshot(self, system: RoomSystem) -> None:
        await populate(system)
        async with client_for(system) as client:
            rooms = (await client.get("/api/rooms")).json()
            snapshot = (await client.get("/api/rooms/r1")).json()

        assert rooms["code"] == 200
        assert rooms["data"][0]["room_id"] == "r1"
        assert rooms["data"][0]["member_count"] == 2
        assert [s["occupant_id"] for s in snapshot["data"]["seats"]] == ["alice", "bob"]
        assert snapshot["data"]["owner_id"] == "alice"

    @pytest.mark.asyncio
    async def test_missing_room_is_404(self, system: RoomSystem) -> None:
        async with client_for(system) as client:
            resp = await client.get("/api/rooms/nope")
        assert resp.status_code == 404
        assert resp.json()["data"] == {"error": "ROOM_NOT_FOUND"}

    @pytest.mark.asyncio
    async def test_presence(self, system: RoomSystem) -> None:
        await populate(system)
        async with client_for(system) as client:
            online = (await client.get("/api/users/alice/presence")).json()["data"]
            offline = (await client.get("/api/users/zed/presence")).json()["data"]

        assert online == {"user_id": "alice", "online": True, "room_id": "r1", "connections": 1}
        assert offline["online"] is False and offline["room_id"] is None

    @pytest.mark.asyncio
    async def test_close_requires_admin(self, system: RoomSystem) -> None:
        await populate(system)
        async with client_for(system) as client:
            anonymous = await client.post("/api/rooms/r1/close")
            member = await client.post("/api/rooms/r1/close", headers={"X-User-Id": "bob"})
            owner = await client.post("/api/rooms/r1/close", headers={"X-User-Id": "alice"})

        assert anonymous.status_code == 403
        assert member.status_code == 403
        assert owner.status_code == 200
        assert system.room_snapshot("r1").closed is True

    @pytest.mark.asyncio
    async def test_messages_without_persistence(self, system: RoomSystem) -> None:
        async with client_for(system) as client:
            resp = await client.get("/api/rooms/r1/messages")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_contributions(self, clock: FakeClock) -> None:
        system = make_system(clock)
        await populate(system)
        cid = system.registry.connections_of("bob")[0]
        await system.handle(cid, {"event": "gift:send", "gift_id": "heart", "receiver_id": "alice", "quantity": 2})

        async with client_for(system) as client:
            data = (await client.get("/api/rooms/r1/contributions")).json()["data"]
        assert data == [{"user_id": "bob", "coins_spent": 200}]


# ── WebSocket ─────────────────────────────────────────────────────────

def mock_websocket(system: RoomSystem, headers: dict[str, str], messages: list) -> AsyncMock:
    ws = AsyncMock(spec=WebSocket)
    ws.headers = headers
    ws.app = MagicMock()
    ws.app.state.room_system = system
    ws.receive_text.side_effect = [*messages, WebSocketDisconnect()]
    return ws


def sent_events(ws: AsyncMock) -> list[str]:
    return [json.loads(call.args[0])["event"] for call in ws.send_text.call_args_list]


class TestWebSocket:

    @pytest.mark.asyncio
    async def test_rejects_missing_identity(self, system: RoomSystem) -> None:
        ws = mock_websocket(system, {}, [])
        await websocket_room_endpoint(ws, user_id=None)
        ws.close.assert_awaited_once_with(code=WS_CLOSE_UNAUTHORIZED)
        ws.accept.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_session_lifecycle(self, system: RoomSystem) -> None:
        join = json.dumps({"event": "room:join", "room_id": "r1"})
        ws = mock_websocket(system, {"x-user-id": "alice"}, [join])

        await websocket_room_endpoint(ws, user_id=None)

        ws.accept.assert_awaited_once()
        assert sent_events(ws)[0] == "authenticated"
        # 断开后连接与成员关系都被清理
        assert system.registry.online_count == 0
        assert system.store.get("r1").is_empty

    @pytest.mark.asyncio
    async def test_duplicate_connection_closed(self, clock: FakeClock) -> None:
        system = make_system(clock, SINGLE_SESSION=True)
        system.connect(object(), "alice")
        ws = mock_websocket(system, {}, [])

        await websocket_room_endpoint(ws, user_id="alice")

        assert sent_events(ws) == ["error"]
        ws.close.assert_awaited_once_with(code=WS_CLOSE_DUPLICATE)
