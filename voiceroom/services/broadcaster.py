"""
voiceroom.services.broadcaster
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

事件广播器 —— 传输无关的投递层。

每个连接拥有一个有界的待发送队列（outbox），``deliver`` / ``broadcast``
只做非阻塞入队，由传输层（WebSocket 发送协程）按顺序取出发送。
因此在房间锁内广播不会被慢客户端拖住，且同一房间的事件以相同顺序
进入每个订阅者的队列。
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable

from voiceroom.core.logging import get_logger
from voiceroom.schemas.events import OutboundEvent
from voiceroom.services.connection_registry import ConnectionRegistry

logger = get_logger(__name__)

EventSink = Callable[[OutboundEvent], None]
Outbox = asyncio.Queue  # asyncio.Queue[OutboundEvent | None]


class RoomBroadcaster:
    """事件广播器。

    Attributes:
        registry: 连接注册表，用于查找房间内的连接。
        outbox_size: 单连接待发送队列上限。
        on_overflow: 队列溢出（慢消费者）时的回调，参数为连接 ID。
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        outbox_size: int = 256,
        on_overflow: Callable[[str], None] | None = None,
    ) -> None:
        self.registry = registry
        self.outbox_size = outbox_size
        self.on_overflow = on_overflow
        self._outboxes: dict[str, Outbox] = {}
        self._sinks: list[EventSink] = []

    def attach(self, connection_id: str) -> Outbox:
        """为连接创建待发送队列，传输层从中取事件发送。"""
        outbox: Outbox = asyncio.Queue(maxsize=self.outbox_size)
        self._outboxes[connection_id] = outbox
        return outbox

    def detach(self, connection_id: str) -> None:
        """移除连接的队列，并放入 ``None`` 通知发送协程退出。"""
        outbox = self._outboxes.pop(connection_id, None)
        if outbox is None:
            return
        while outbox.full():
            outbox.get_nowait()
        outbox.put_nowait(None)

    def add_sink(self, sink: EventSink) -> None:
        """订阅全部房间广播（持久化等旁路消费者）。"""
        self._sinks.append(sink)

    def deliver(self, connection_id: str, event: OutboundEvent) -> bool:
        """向单个连接投递事件。连接不存在或队列已满时返回 False。"""
        outbox = self._outboxes.get(connection_id)
        if outbox is None:
            return False
        try:
            outbox.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("待发送队列已满，断开慢连接 | conn=%s", connection_id)
            if self.on_overflow is not None:
                self.on_overflow(connection_id)
            return False
        return True

    def broadcast(
        self,
        room_id: str,
        event: OutboundEvent,
        exclude: str | None = None,
    ) -> int:
        """向房间内所有连接广播事件，返回成功入队的连接数。"""
        delivered = 0
        for connection_id in self.registry.connections_in(room_id):
            if connection_id == exclude:
                continue
            if self.deliver(connection_id, event):
                delivered += 1

        for sink in self._sinks:
            try:
                sink(event)
            except Exception as e:
                logger.error("广播旁路消费失败: %s", e, exc_info=True)
        return delivered
