"""
voiceroom.services.event_sink
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

广播流的异步持久化消费者。

注册为 ``RoomBroadcaster`` 的旁路订阅者，只接收礼物与聊天事件，
非阻塞入队后由后台协程写入 MongoDB。写入失败只记录日志，
不会影响房间状态和实时广播。
"""
from __future__ import annotations

import asyncio
import contextlib

from voiceroom.core.logging import get_logger
from voiceroom.db.event_repository import RoomEventRepository
from voiceroom.schemas.events import OutboundEvent, OutboundEventType

logger = get_logger(__name__)

_PERSISTED: frozenset[OutboundEventType] = frozenset({
    OutboundEventType.GIFT_RECEIVED,
    OutboundEventType.MESSAGE_RECEIVED,
})


class EventSink:
    """礼物 / 聊天事件持久化消费者。

    Attributes:
        repo: 房间事件仓库。
    """

    def __init__(self, repo: RoomEventRepository, maxsize: int = 1000) -> None:
        self.repo = repo
        self._queue: asyncio.Queue[OutboundEvent] = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task | None = None

    def __call__(self, event: OutboundEvent) -> None:
        if event.event not in _PERSISTED or event.room_id is None:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("持久化队列已满，丢弃事件 | room=%s | seq=%s", event.room_id, event.seq)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="event-sink")

    async def stop(self) -> None:
        """等待队列中的事件写完后停止。"""
        if self._task is None:
            return
        await self._queue.join()
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.persist(event)
            except Exception as e:
                # 持久化失败不应影响实时房间
                logger.warning("事件持久化失败: %s | room=%s", e, event.room_id, exc_info=True)
            finally:
                self._queue.task_done()

    async def persist(self, event: OutboundEvent) -> None:
        if event.event is OutboundEventType.GIFT_RECEIVED:
            await self.repo.save_gift(event.room_id, event.seq, event.data)
        elif event.event is OutboundEventType.MESSAGE_RECEIVED:
            await self.repo.save_message(event.room_id, event.seq, event.data)

    @property
    def pending(self) -> int:
        return self._queue.qsize()
