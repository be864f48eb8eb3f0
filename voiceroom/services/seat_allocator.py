"""
voiceroom.services.seat_allocator
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

麦位分配器 —— 在争抢下分配 / 释放有限的麦位。

规则:
  - 指定了 ``preferred_index`` 且该麦位空闲 → 分配该麦位；
  - 否则分配序号最小的空闲麦位；
  - 全部占满 → ``NoSeatsAvailable``（不排队）；
  - 非成员 → ``NotAMember``；已在麦上 → ``AlreadySeated``（必须先下麦）；
  - 释放未持有的麦位是空操作。

``allocate`` / ``release`` 等同步方法直接操作 ``Room``，调用方必须已持有
房间锁（事件路由在 ``apply_mutation`` 内部调用）；``request_seat`` /
``release_seat`` 是自行加锁的异步入口。
"""
from __future__ import annotations

from voiceroom.core.errors import (
    AlreadySeated,
    NoSeatsAvailable,
    SeatOccupied,
    ValidationError,
)
from voiceroom.core.logging import get_logger
from voiceroom.schemas.events import OutboundEventType
from voiceroom.services.room_store import Room, RoomEmitter, RoomSessionStore, Seat

logger = get_logger(__name__)


class SeatAllocator:
    """麦位分配器。"""

    def __init__(self, store: RoomSessionStore) -> None:
        self.store = store

    # ── 加锁入口 ──────────────────────────────────────────────────────

    async def request_seat(
        self,
        room_id: str,
        user_id: str,
        preferred_index: int | None = None,
    ) -> int:
        """为成员分配麦位并广播 ``SEAT_UPDATED``，返回麦位序号。"""

        def _request(room: Room, emit: RoomEmitter) -> int:
            seat = self.allocate(room, user_id, preferred_index)
            emit.broadcast(OutboundEventType.SEAT_UPDATED, room.seat_data(seat).model_dump(mode="json"))
            return seat.index

        return await self.store.apply_mutation(room_id, _request)

    async def release_seat(self, room_id: str, user_id: str) -> int | None:
        """释放成员的麦位，未持有时为空操作。返回被释放的麦位序号。"""

        def _release(room: Room, emit: RoomEmitter) -> int | None:
            seat = self.release(room, user_id)
            if seat is None:
                return None
            emit.broadcast(OutboundEventType.SEAT_UPDATED, room.seat_data(seat).model_dump(mode="json"))
            return seat.index

        return await self.store.apply_mutation(room_id, _release)

    # ── 持锁操作 ──────────────────────────────────────────────────────

    def allocate(self, room: Room, user_id: str, preferred_index: int | None = None) -> Seat:
        """分配麦位（调用方持有房间锁）。"""
        room.member(user_id)
        if room.seat_of(user_id) is not None:
            raise AlreadySeated(f"用户 {user_id} 已在麦上")
        self._check_index(room, preferred_index)

        seat = self._pick(room, preferred_index)
        if seat is None:
            raise NoSeatsAvailable(f"房间 {room.room_id} 没有空闲麦位")
        self._seat(room, seat, user_id)
        return seat

    def assign(self, room: Room, user_id: str, index: int | None = None) -> Seat:
        """管理员为成员指定麦位（调用方持有房间锁）。

        与 ``allocate`` 的区别：指定的麦位被占用时直接报 ``SeatOccupied``，不回退。
        """
        if index is None:
            return self.allocate(room, user_id)
        room.member(user_id)
        if room.seat_of(user_id) is not None:
            raise AlreadySeated(f"用户 {user_id} 已在麦上")
        self._check_index(room, index)

        seat = room.seats[index]
        if not seat.is_free:
            raise SeatOccupied(f"麦位 {index} 已被占用或锁定")
        self._seat(room, seat, user_id)
        return seat

    def release(self, room: Room, user_id: str) -> Seat | None:
        """释放麦位（调用方持有房间锁）。未持有时返回 None。"""
        seat = room.seat_of(user_id)
        if seat is None:
            return None
        seat.reset()
        logger.debug("下麦 | room=%s | user=%s | seat=%d", room.room_id, user_id, seat.index)
        return seat

    def lock(self, room: Room, index: int) -> Seat:
        """锁定空麦位，锁定后不参与分配。"""
        self._check_index(room, index)
        seat = room.seats[index]
        if seat.occupant_id is not None:
            raise SeatOccupied(f"麦位 {index} 有人，无法锁定")
        seat.locked = True
        return seat

    def unlock(self, room: Room, index: int) -> Seat:
        self._check_index(room, index)
        seat = room.seats[index]
        seat.locked = False
        return seat

    # ── 内部 ──────────────────────────────────────────────────────────

    @staticmethod
    def _check_index(room: Room, index: int | None) -> None:
        if index is not None and not 0 <= index < room.capacity:
            raise ValidationError(f"麦位序号 {index} 超出范围 0..{room.capacity - 1}")

    @staticmethod
    def _pick(room: Room, preferred_index: int | None) -> Seat | None:
        if preferred_index is not None and room.seats[preferred_index].is_free:
            return room.seats[preferred_index]
        for seat in room.seats:
            if seat.is_free:
                return seat
        return None

    @staticmethod
    def _seat(room: Room, seat: Seat, user_id: str) -> None:
        seat.reset()
        seat.occupant_id = user_id
        room.members[user_id].hand_raised = False
        logger.debug("上麦 | room=%s | user=%s | seat=%d", room.room_id, user_id, seat.index)
