"""
voiceroom.services.room_system
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

语音房系统 —— 组装连接注册表、房间存储、麦位分配、事件路由与在线巡检，
并管理后台任务的生命周期。

在 FastAPI lifespan 中创建并挂载于 ``app.state.room_system``。
"""
from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from voiceroom.core.config import Settings, settings
from voiceroom.core.logging import get_logger
from voiceroom.db.event_repository import RoomEventRepository
from voiceroom.schemas.events import OutboundEvent, OutboundEventType
from voiceroom.schemas.rooms import (
    ContributionData,
    PresenceData,
    RoomInfoData,
    RoomSnapshotData,
)
from voiceroom.services.broadcaster import Outbox, RoomBroadcaster
from voiceroom.services.connection_registry import ConnectionRegistry
from voiceroom.services.event_router import EventRouter
from voiceroom.services.event_sink import EventSink
from voiceroom.services.presence import PresenceReconciler
from voiceroom.services.room_store import RoomSessionStore
from voiceroom.services.seat_allocator import SeatAllocator
from voiceroom.services.wallet import HttpWalletClient, InMemoryWalletClient, WalletClient

logger = get_logger(__name__)


def build_wallet(config: Settings) -> WalletClient:
    """按配置选择钱包实现：配置了 ``WALLET_BASE_URL`` 时走外部服务。"""
    if config.WALLET_BASE_URL:
        return HttpWalletClient(config.WALLET_BASE_URL, timeout=config.WALLET_TIMEOUT_SECONDS)
    return InMemoryWalletClient(initial_coins=config.WALLET_INITIAL_COINS)


class RoomSystem:
    """语音房系统（每个应用进程一个实例）。

    - ``connect(handle, user_id)``   → 登记已认证连接，返回连接 ID 与待发送队列
    - ``handle(connection_id, raw)`` → 处理一条入站消息
    - ``disconnect(connection_id)``  → 显式断开，立即清理
    - ``list_rooms()`` / ``room_snapshot()`` / ``presence()`` → 只读查询

    Attributes:
        registry: 连接注册表。
        broadcaster: 事件广播器。
        store: 房间会话存储。
        allocator: 麦位分配器。
        wallet: 钱包客户端。
        router: 事件路由。
        reconciler: 在线状态巡检器。
        sink: 可选的事件持久化消费者。
    """

    def __init__(
        self,
        config: Settings = settings,
        wallet: WalletClient | None = None,
        repo: RoomEventRepository | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.registry = ConnectionRegistry(single_session=config.SINGLE_SESSION, clock=clock)
        self.broadcaster = RoomBroadcaster(
            self.registry,
            outbox_size=config.OUTBOX_SIZE,
            on_overflow=self._on_overflow,
        )
        self.store = RoomSessionStore(
            self.registry,
            self.broadcaster,
            seat_count=config.ROOM_SEAT_COUNT,
            max_members=config.ROOM_MAX_MEMBERS,
            idle_grace=config.ROOM_IDLE_GRACE_SECONDS,
            clock=clock,
        )
        self.allocator = SeatAllocator(self.store)
        self.wallet = wallet or build_wallet(config)
        self.router = EventRouter(
            self.registry,
            self.store,
            self.allocator,
            self.broadcaster,
            self.wallet,
            self_service_seats=config.SELF_SERVICE_SEATS,
            wallet_timeout=config.WALLET_TIMEOUT_SECONDS,
        )
        self.reconciler = PresenceReconciler(
            self.registry,
            self.router,
            self.store,
            self.broadcaster,
            timeout=config.HEARTBEAT_TIMEOUT,
            interval=config.reconcile_interval,
        )
        self.sink: EventSink | None = None
        if repo is not None:
            self.sink = EventSink(repo)
            self.broadcaster.add_sink(self.sink)

    # ── 生命周期 ──────────────────────────────────────────────────────

    def start(self) -> None:
        self.reconciler.start()
        if self.sink is not None:
            self.sink.start()

    async def stop(self) -> None:
        await self.reconciler.stop()
        if self.sink is not None:
            await self.sink.stop()
        await self.wallet.aclose()

    # ── 连接 ──────────────────────────────────────────────────────────

    def connect(self, handle: Any, user_id: str) -> tuple[str, Outbox]:
        """登记一个已认证连接。

        Raises:
            DuplicateConnection: 开启单会话策略且该用户已在线。
        """
        connection_id = self.registry.register(handle, user_id)
        outbox = self.broadcaster.attach(connection_id)
        self.broadcaster.deliver(
            connection_id,
            OutboundEvent(
                event=OutboundEventType.AUTHENTICATED,
                data={
                    "user_id": user_id,
                    "connection_id": connection_id,
                    "heartbeat_interval": self.config.HEARTBEAT_INTERVAL,
                    "heartbeat_timeout": self.config.HEARTBEAT_TIMEOUT,
                },
            ),
        )
        return connection_id, outbox

    async def handle(self, connection_id: str, raw: str | bytes | dict[str, Any]) -> None:
        await self.router.handle_raw(connection_id, raw)

    async def disconnect(self, connection_id: str, reason: str = "disconnect") -> None:
        """显式断开：跳过心跳超时，立即离开房间并注销连接。"""
        await self.reconciler.cleanup(connection_id, reason=reason)

    # ── 查询 ──────────────────────────────────────────────────────────

    def list_rooms(self) -> list[RoomInfoData]:
        return self.store.list_rooms()

    def room_snapshot(self, room_id: str) -> RoomSnapshotData:
        return self.store.get(room_id).snapshot()

    def contributions(self, room_id: str) -> list[ContributionData]:
        return self.store.get(room_id).contribution_ranking()

    def presence(self, user_id: str) -> PresenceData:
        connection_ids = self.registry.connections_of(user_id)
        room_id = None
        for connection_id in connection_ids:
            room_id = self.registry.room_of(connection_id) or room_id
        return PresenceData(
            user_id=user_id,
            online=bool(connection_ids),
            room_id=room_id,
            connections=len(connection_ids),
        )

    async def close_room(self, room_id: str, actor_id: str | None = None) -> None:
        await self.router.close_room(room_id, actor_id=actor_id, reason="closed via api")

    # ── 内部 ──────────────────────────────────────────────────────────

    def _on_overflow(self, connection_id: str) -> None:
        self.reconciler.schedule_cleanup(connection_id, reason="slow_consumer")
