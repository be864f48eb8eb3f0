"""
voiceroom.services.presence
~~~~~~~~~~~~~~~~~~~~~~~~~~~

在线状态巡检 —— 处理静默断线，保证不会遗留孤立的麦位和成员关系。

按固定间隔扫描连接注册表，对心跳超时的连接合成一次 ``ROOM_LEAVE``，
与真实离开走完全相同的事件路由（同样的房间锁和广播路径），然后注销连接。
显式断开（WebSocket 关闭）跳过超时、立即执行同样的清理。

单个连接清理失败只记录日志，不影响其他连接和巡检循环。
"""
from __future__ import annotations

import asyncio
import contextlib

from voiceroom.core.errors import RoomError
from voiceroom.core.logging import get_logger
from voiceroom.services.broadcaster import RoomBroadcaster
from voiceroom.services.connection_registry import Connection, ConnectionRegistry
from voiceroom.services.event_router import EventRouter
from voiceroom.services.room_store import RoomSessionStore

logger = get_logger(__name__)


class PresenceReconciler:
    """在线状态巡检器。

    Attributes:
        timeout: 心跳超时阈值（秒）。
        interval: 巡检间隔（秒）。
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        router: EventRouter,
        store: RoomSessionStore,
        broadcaster: RoomBroadcaster,
        timeout: float = 60.0,
        interval: float = 30.0,
    ) -> None:
        self.registry = registry
        self.router = router
        self.store = store
        self.broadcaster = broadcaster
        self.timeout = timeout
        self.interval = interval
        self._task: asyncio.Task | None = None
        self._in_progress: set[str] = set()
        self._background: set[asyncio.Task] = set()
        registry.add_listener(self._on_unregister)

    # ── 清理 ──────────────────────────────────────────────────────────

    async def cleanup(self, connection_id: str, reason: str = "disconnect") -> bool:
        """离开房间并注销连接。连接不存在或正在清理时返回 False。"""
        conn = self.registry.find(connection_id)
        if conn is None or connection_id in self._in_progress:
            return False

        self._in_progress.add(connection_id)
        try:
            if conn.room_id is not None:
                await self.router.leave_room(
                    conn.user_id, conn.room_id, connection_id, reason=reason,
                )
        except RoomError as e:
            logger.warning(
                "清理连接时离开房间失败 | conn=%s | room=%s | %s",
                connection_id, conn.room_id, e.message,
            )
        except Exception as e:
            logger.error("清理连接异常 | conn=%s | %s", connection_id, e, exc_info=True)
        finally:
            self.registry.set_room(connection_id, None)
            self.registry.unregister(connection_id)
            self.broadcaster.detach(connection_id)
            self._in_progress.discard(connection_id)
        logger.info("连接已清理 | conn=%s | user=%s | reason=%s", connection_id, conn.user_id, reason)
        return True

    async def reconcile_once(self, now: float | None = None) -> int:
        """执行一轮巡检，返回本轮清理的超时连接数。"""
        expired = self.registry.expired(self.timeout, now)
        cleaned = 0
        for conn in expired:
            if await self.cleanup(conn.connection_id, reason="timeout"):
                cleaned += 1
        if cleaned:
            logger.info("心跳超时清理 | count=%d", cleaned)
        self.store.evict_idle()
        return cleaned

    def schedule_cleanup(self, connection_id: str, reason: str) -> None:
        """在后台调度一次清理（供同步回调使用）。"""
        self._spawn(self.cleanup(connection_id, reason=reason))

    # ── 生命周期 ──────────────────────────────────────────────────────

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="presence-reconciler")
            logger.info("在线状态巡检已启动 | timeout=%.1fs | interval=%.1fs", self.timeout, self.interval)

    async def stop(self) -> None:
        tasks = [t for t in (self._task, *self._background) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._task = None
        self._background.clear()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.reconcile_once()
            except Exception as e:
                logger.error("在线状态巡检异常: %s", e, exc_info=True)

    # ── 内部 ──────────────────────────────────────────────────────────

    def _on_unregister(self, conn: Connection) -> None:
        # 未经清理流程直接注销的连接，补一次离开
        if conn.room_id is None:
            return
        self._spawn(self._leave_orphan(conn))

    async def _leave_orphan(self, conn: Connection) -> None:
        try:
            await self.router.leave_room(conn.user_id, conn.room_id, reason="disconnect")
        except RoomError as e:
            logger.warning("补偿离开房间失败 | room=%s | user=%s | %s", conn.room_id, conn.user_id, e.message)
        except Exception as e:
            logger.error("补偿离开房间异常 | user=%s | %s", conn.user_id, e, exc_info=True)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
