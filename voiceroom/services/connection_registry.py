"""
voiceroom.services.connection_registry
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

连接注册表 —— 维护「传输连接 → 已认证用户」的映射与心跳存活状态。

连接本身不挂任何房间状态，只记录所在房间 ID；房间状态统一由
``RoomSessionStore`` 持有，两者通过 ID 关联。
"""
from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from voiceroom.core.errors import ConnectionNotFound, DuplicateConnection
from voiceroom.core.logging import get_logger

logger = get_logger(__name__)

ConnectionListener = Callable[["Connection"], None]


@dataclass
class Connection:
    """一个已认证的传输连接。

    Attributes:
        connection_id: 连接唯一标识。
        user_id: 已认证的用户 ID。
        handle: 传输层句柄（如 WebSocket），注册表不关心其类型。
        room_id: 当前所在房间，同一时刻最多一个。
        connected_at: 建立时间（单调时钟）。
        last_heartbeat: 最近一次心跳时间（单调时钟）。
    """

    connection_id: str
    user_id: str
    handle: Any = field(default=None, repr=False)
    room_id: str | None = None
    connected_at: float = 0.0
    last_heartbeat: float = 0.0


class ConnectionRegistry:
    """连接注册表。

    Attributes:
        single_session: 为 True 时同一用户只允许一个并发连接。
    """

    def __init__(
        self,
        single_session: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.single_session = single_session
        self._clock = clock
        self._connections: dict[str, Connection] = {}
        self._by_user: dict[str, set[str]] = {}
        self._by_room: dict[str, set[str]] = {}
        self._listeners: list[ConnectionListener] = []

    # ── 生命周期 ──────────────────────────────────────────────────────

    def register(self, handle: Any, user_id: str) -> str:
        """登记一个已认证连接，返回连接 ID。

        Raises:
            DuplicateConnection: 开启单会话策略且该用户已有连接。
        """
        if self.single_session and self._by_user.get(user_id):
            raise DuplicateConnection(f"用户 {user_id} 已有活跃连接")

        now = self._clock()
        connection_id = uuid.uuid4().hex
        self._connections[connection_id] = Connection(
            connection_id=connection_id,
            user_id=user_id,
            handle=handle,
            connected_at=now,
            last_heartbeat=now,
        )
        self._by_user.setdefault(user_id, set()).add(connection_id)
        logger.debug("连接已登记 | conn=%s | user=%s", connection_id, user_id)
        return connection_id

    def heartbeat(self, connection_id: str) -> None:
        """刷新连接的存活时间。"""
        self.get(connection_id).last_heartbeat = self._clock()

    def unregister(self, connection_id: str) -> Connection | None:
        """注销连接并通知监听者。重复注销是空操作，返回 None。"""
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return None

        user_conns = self._by_user.get(conn.user_id)
        if user_conns is not None:
            user_conns.discard(connection_id)
            if not user_conns:
                del self._by_user[conn.user_id]
        self._unindex_room(conn)

        logger.debug("连接已注销 | conn=%s | user=%s", connection_id, conn.user_id)
        for listener in self._listeners:
            try:
                listener(conn)
            except Exception as e:
                logger.error("连接注销回调失败: %s", e, exc_info=True)
        return conn

    def add_listener(self, listener: ConnectionListener) -> None:
        """注册连接注销回调。"""
        self._listeners.append(listener)

    # ── 查询 ──────────────────────────────────────────────────────────

    def get(self, connection_id: str) -> Connection:
        conn = self._connections.get(connection_id)
        if conn is None:
            raise ConnectionNotFound(f"连接 {connection_id} 不存在")
        return conn

    def find(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def room_of(self, connection_id: str) -> str | None:
        """返回连接当前所在房间。"""
        return self.get(connection_id).room_id

    def set_room(self, connection_id: str, room_id: str | None) -> None:
        """更新连接所在房间（维护房间 → 连接索引）。连接已注销时忽略。"""
        conn = self._connections.get(connection_id)
        if conn is None:
            return
        self._unindex_room(conn)
        conn.room_id = room_id
        if room_id is not None:
            self._by_room.setdefault(room_id, set()).add(connection_id)

    def connections_in(self, room_id: str) -> list[str]:
        """房间内所有连接 ID。"""
        return list(self._by_room.get(room_id, ()))

    def connections_of(self, user_id: str) -> list[str]:
        """用户的所有连接 ID。"""
        return list(self._by_user.get(user_id, ()))

    def user_connections_in(self, user_id: str, room_id: str) -> list[str]:
        """用户位于指定房间内的连接 ID。"""
        return [
            cid for cid in self._by_user.get(user_id, ())
            if self._connections[cid].room_id == room_id
        ]

    def is_online(self, user_id: str) -> bool:
        return bool(self._by_user.get(user_id))

    def expired(self, timeout: float, now: float | None = None) -> list[Connection]:
        """返回心跳超时的连接。"""
        now = self._clock() if now is None else now
        return [
            conn for conn in self._connections.values()
            if now - conn.last_heartbeat > timeout
        ]

    @property
    def online_count(self) -> int:
        """当前连接数。"""
        return len(self._connections)

    def _unindex_room(self, conn: Connection) -> None:
        if conn.room_id is None:
            return
        room_conns = self._by_room.get(conn.room_id)
        if room_conns is not None:
            room_conns.discard(conn.connection_id)
            if not room_conns:
                del self._by_room[conn.room_id]
