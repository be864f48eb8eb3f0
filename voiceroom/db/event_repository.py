"""
voiceroom.db.event_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间事件持久化仓库 —— 礼物回执（``gift_receipts``）与聊天记录（``room_messages``）。

每条记录一个文档（扁平设计），按房间 + 时间建复合索引，便于分页回看。
集合在首次写入时自动创建并建立索引。
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, TypedDict

from motor.motor_asyncio import AsyncIOMotorDatabase

from voiceroom.core.logging import get_logger

logger = get_logger(__name__)

_GIFTS = "gift_receipts"
_MESSAGES = "room_messages"


class RoomMessage(TypedDict):
    """``room_messages`` 集合的单条记录"""
    room_id: str
    seq: int
    message_id: str
    user_id: str
    content: str
    type: str
    created_at: datetime


class RoomEventRepository:
    """房间事件持久化仓库。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._gifts = db[_GIFTS]
        self._messages = db[_MESSAGES]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        await self._messages.create_index(
            [("room_id", 1), ("created_at", 1)],
            name="idx_room_time",
        )
        await self._gifts.create_index(
            [("room_id", 1), ("created_at", 1)],
            name="idx_room_time",
        )
        await self._gifts.create_index("transaction_id", name="uniq_transaction", unique=True)
        self._indexes_created = True
        logger.debug("房间事件集合索引已就绪")

    async def save_gift(self, room_id: str, seq: int | None, receipt: dict[str, Any]) -> None:
        """保存一条礼物回执。"""
        await self._ensure_indexes()
        doc = {
            **receipt,
            "room_id": room_id,
            "seq": seq,
            "created_at": datetime.now(timezone.utc),
        }
        await self._gifts.insert_one(doc)

    async def save_message(self, room_id: str, seq: int | None, message: dict[str, Any]) -> None:
        """保存一条聊天消息。"""
        await self._ensure_indexes()
        doc = {
            "room_id": room_id,
            "seq": seq,
            "message_id": message["message_id"],
            "user_id": message["user_id"],
            "content": message["content"],
            "type": message.get("type", "text"),
            "created_at": datetime.now(timezone.utc),
        }
        await self._messages.insert_one(doc)

    async def get_messages(
        self,
        room_id: str,
        skip: int = 0,
        limit: int = 100,
    ) -> list[RoomMessage]:
        """获取指定房间的聊天记录（分页，按时间正序）。"""
        await self._ensure_indexes()
        cursor = (
            self._messages
            .find({"room_id": room_id}, {"_id": 0})
            .sort("created_at", 1)
            .skip(skip)
            .limit(limit)
        )
        return await cursor.to_list(length=limit)

    async def count_messages(self, room_id: str) -> int:
        """获取指定房间的聊天记录总数。"""
        await self._ensure_indexes()
        return await self._messages.count_documents({"room_id": room_id})
