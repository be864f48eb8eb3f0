"""
voiceroom.services.room_store
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间会话存储 —— 内存中每个房间的权威状态：成员、麦位、静音 / 发言标记。

所有修改都经由 ``apply_mutation`` 在房间级 ``asyncio.Lock`` 内执行：
同一房间的修改严格串行，不同房间互不阻塞。修改函数通过 ``RoomEmitter``
登记要推送的事件，存储层在释放锁之前为广播分配房间内序号并投递，
因此所有订阅者看到的广播顺序与修改的应用顺序一致。
修改函数抛出异常时，已登记的事件全部丢弃，不会产生部分广播。
"""
from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from voiceroom.core.errors import NotAMember, RoomClosed, RoomNotFound
from voiceroom.core.logging import get_logger
from voiceroom.schemas.events import OutboundEvent, OutboundEventType
from voiceroom.schemas.rooms import (
    ContributionData,
    MemberData,
    Role,
    RoomInfoData,
    RoomSnapshotData,
    SeatData,
)
from voiceroom.services.broadcaster import RoomBroadcaster
from voiceroom.services.connection_registry import ConnectionRegistry

logger = get_logger(__name__)

T = TypeVar("T")


# ── 领域模型 ──────────────────────────────────────────────────────────

@dataclass
class Seat:
    """一个麦位。只能经由 ``SeatAllocator`` 修改。"""

    index: int
    occupant_id: str | None = None
    muted: bool = False
    speaking: bool = False
    video_on: bool = False
    locked: bool = False

    @property
    def is_free(self) -> bool:
        return self.occupant_id is None and not self.locked

    def reset(self) -> None:
        self.occupant_id = None
        self.muted = False
        self.speaking = False
        self.video_on = False


@dataclass
class Member:
    """房间成员关系 (room_id, user_id) 及其角色。"""

    user_id: str
    role: Role = Role.MEMBER
    joined_at: float = 0.0
    hand_raised: bool = False


@dataclass
class Room:
    """一个语音房的内存状态。

    Attributes:
        room_id: 房间唯一标识。
        seats: 固定容量的有序麦位列表。
        members: 成员表，按加入顺序排列。
        owner_id: 房主用户 ID，房间为空时为 None。
        closed: 是否已关闭。
        max_members: 成员上限。
        seq: 最近一条广播的房间内序号。
        empty_since: 房间变空的时间（单调时钟），非空时为 None。
        contributions: 本场礼物贡献（送礼人 → 累计金币）。
    """

    room_id: str
    seats: list[Seat]
    max_members: int
    members: dict[str, Member] = field(default_factory=dict)
    owner_id: str | None = None
    closed: bool = False
    seq: int = 0
    created_at: float = 0.0
    empty_since: float | None = None
    contributions: dict[str, int] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @property
    def capacity(self) -> int:
        return len(self.seats)

    @property
    def is_empty(self) -> bool:
        return not self.members

    def is_member(self, user_id: str) -> bool:
        return user_id in self.members

    def member(self, user_id: str) -> Member:
        """返回成员，非成员抛出 ``NotAMember``。"""
        member = self.members.get(user_id)
        if member is None:
            raise NotAMember(f"用户 {user_id} 不在房间 {self.room_id} 中")
        return member

    def seat_of(self, user_id: str) -> Seat | None:
        for seat in self.seats:
            if seat.occupant_id == user_id:
                return seat
        return None

    def pick_successor(self) -> Member | None:
        """房主离开后的继任者：角色最高者中最早加入的一位。"""
        best: Member | None = None
        for member in self.members.values():
            if best is None or member.role.rank > best.role.rank:
                best = member
        return best

    def consistency_errors(self) -> list[str]:
        """检查房间不变量，返回违反项描述（为空表示一致）。"""
        errors: list[str] = []
        occupants = [s.occupant_id for s in self.seats if s.occupant_id is not None]
        if len(occupants) != len(set(occupants)):
            errors.append("同一用户占用了多个麦位")
        for seat in self.seats:
            if seat.occupant_id is not None and seat.occupant_id not in self.members:
                errors.append(f"麦位 {seat.index} 的占用者 {seat.occupant_id} 不是成员")
            if seat.locked and seat.occupant_id is not None:
                errors.append(f"麦位 {seat.index} 已锁定但有人")
        owners = [m.user_id for m in self.members.values() if m.role is Role.OWNER]
        if self.members and (len(owners) != 1 or owners[0] != self.owner_id):
            errors.append(f"房主不唯一或不一致: {owners} / {self.owner_id}")
        return errors

    # ── 视图 ──────────────────────────────────────────────────────────

    def seat_data(self, seat: Seat) -> SeatData:
        occupant = self.members.get(seat.occupant_id) if seat.occupant_id else None
        return SeatData(
            index=seat.index,
            occupant_id=seat.occupant_id,
            muted=seat.muted,
            speaking=seat.speaking,
            video_on=seat.video_on,
            hand_raised=occupant.hand_raised if occupant else False,
            locked=seat.locked,
        )

    def member_data(self, member: Member) -> MemberData:
        seat = self.seat_of(member.user_id)
        return MemberData(
            user_id=member.user_id,
            role=member.role,
            seat_index=seat.index if seat else None,
            hand_raised=member.hand_raised,
        )

    def info(self) -> RoomInfoData:
        """返回房间摘要信息。"""
        return RoomInfoData(
            room_id=self.room_id,
            owner_id=self.owner_id,
            member_count=len(self.members),
            seated_count=sum(1 for s in self.seats if s.occupant_id is not None),
            seat_count=self.capacity,
            closed=self.closed,
        )

    def snapshot(self) -> RoomSnapshotData:
        """返回房间完整快照。"""
        return RoomSnapshotData(
            **self.info().model_dump(),
            seq=self.seq,
            seats=[self.seat_data(s) for s in self.seats],
            members=[self.member_data(m) for m in self.members.values()],
        )

    def contribution_ranking(self) -> list[ContributionData]:
        ranked = sorted(self.contributions.items(), key=lambda kv: kv[1], reverse=True)
        return [ContributionData(user_id=uid, coins_spent=coins) for uid, coins in ranked]


# ── 事件登记 ──────────────────────────────────────────────────────────

@dataclass
class _Emission:
    event_type: OutboundEventType
    data: dict[str, Any]
    target: str | None = None
    exclude: str | None = None


class RoomEmitter:
    """修改函数用来登记待推送事件的收集器。

    事件在修改函数成功返回后、房间锁释放前统一投递；``after`` 登记的回调
    在投递完成后执行（例如关闭房间时先广播再解除连接与房间的关联）。
    """

    def __init__(self) -> None:
        self.emissions: list[_Emission] = []
        self.callbacks: list[Callable[[], None]] = []

    def broadcast(
        self,
        event_type: OutboundEventType,
        data: dict[str, Any],
        exclude: str | None = None,
    ) -> None:
        self.emissions.append(_Emission(event_type, data, exclude=exclude))

    def deliver(self, connection_id: str, event_type: OutboundEventType, data: dict[str, Any]) -> None:
        self.emissions.append(_Emission(event_type, data, target=connection_id))

    def after(self, callback: Callable[[], None]) -> None:
        self.callbacks.append(callback)


Mutation = Callable[[Room, RoomEmitter], "T | Awaitable[T]"]


# ── 存储 ──────────────────────────────────────────────────────────────

class RoomSessionStore:
    """房间会话存储。

    Attributes:
        registry: 连接注册表（关闭房间时解除连接与房间的关联）。
        broadcaster: 事件广播器。
        seat_count: 新建房间的麦位数。
        max_members: 新建房间的成员上限。
        idle_grace: 空房间保留时长（秒）。
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        broadcaster: RoomBroadcaster,
        seat_count: int = 8,
        max_members: int = 100,
        idle_grace: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.broadcaster = broadcaster
        self.seat_count = seat_count
        self.max_members = max_members
        self.idle_grace = idle_grace
        self._clock = clock
        self._rooms: dict[str, Room] = {}

    # ── 查询 ──────────────────────────────────────────────────────────

    def get(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            raise RoomNotFound(f"房间 {room_id} 不存在")
        return room

    def get_or_create(self, room_id: str) -> Room:
        """获取房间，不存在则创建。"""
        room = self._rooms.get(room_id)
        if room is None:
            now = self._clock()
            room = Room(
                room_id=room_id,
                seats=[Seat(index=i) for i in range(self.seat_count)],
                max_members=self.max_members,
                created_at=now,
                empty_since=now,
            )
            self._rooms[room_id] = room
            logger.info("房间已创建 | room=%s | seats=%d", room_id, self.seat_count)
        return room

    def list_rooms(self) -> list[RoomInfoData]:
        """列出所有房间的摘要信息。"""
        return [room.info() for room in self._rooms.values()]

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)

    # ── 修改 ──────────────────────────────────────────────────────────

    async def apply_mutation(self, room_id: str, fn: Mutation, create: bool = False) -> Any:
        """在房间锁内执行修改并按序投递其登记的事件。

        Args:
            room_id: 目标房间。
            fn: 修改函数 ``fn(room, emitter)``，可以是协程函数。
            create: 房间不存在时是否自动创建（仅加入房间使用）。

        Returns:
            修改函数的返回值。

        Raises:
            RoomNotFound: 房间不存在且 ``create`` 为 False。
            RoomClosed: 房间已关闭。
        """
        while True:
            room = self.get_or_create(room_id) if create else self.get(room_id)
            async with room.lock:
                # 等锁期间房间可能已被回收
                if self._rooms.get(room_id) is not room:
                    if create:
                        continue
                    raise RoomNotFound(f"房间 {room_id} 不存在")
                if room.closed:
                    raise RoomClosed(f"房间 {room_id} 已关闭")

                emitter = RoomEmitter()
                result = fn(room, emitter)
                if inspect.isawaitable(result):
                    result = await result
                self._flush(room, emitter)
                self._touch(room)
                return result

    async def close(
        self,
        room_id: str,
        reason: str | None = None,
        check: Callable[[Room], None] | None = None,
    ) -> None:
        """关闭房间：标记关闭、广播 ``ROOM_CLOSED``，然后清退全部成员。

        Args:
            room_id: 目标房间。
            reason: 关闭原因，随事件广播。
            check: 持锁后执行的权限检查，抛出异常则不关闭。
        """

        def _close(room: Room, emit: RoomEmitter) -> None:
            if check is not None:
                check(room)
            room.closed = True
            emit.broadcast(
                OutboundEventType.ROOM_CLOSED,
                {"room_id": room.room_id, "reason": reason},
            )
            emit.after(lambda: self._evict_members(room))

        await self.apply_mutation(room_id, _close)
        logger.info("房间已关闭 | room=%s | reason=%s", room_id, reason)

    def evict_idle(self, now: float | None = None) -> list[str]:
        """回收空闲超过保留时长的空房间，返回被回收的房间 ID。"""
        now = self._clock() if now is None else now
        evicted: list[str] = []
        for room_id, room in list(self._rooms.items()):
            if not room.is_empty or room.lock.locked():
                continue
            if room.empty_since is not None and now - room.empty_since >= self.idle_grace:
                del self._rooms[room_id]
                evicted.append(room_id)
        if evicted:
            logger.info("回收空闲房间 | rooms=%s", evicted)
        return evicted

    # ── 内部 ──────────────────────────────────────────────────────────

    def _flush(self, room: Room, emitter: RoomEmitter) -> None:
        for emission in emitter.emissions:
            if emission.target is None:
                room.seq += 1
                event = OutboundEvent(
                    event=emission.event_type,
                    room_id=room.room_id,
                    seq=room.seq,
                    data=emission.data,
                )
                self.broadcaster.broadcast(room.room_id, event, exclude=emission.exclude)
            else:
                event = OutboundEvent(
                    event=emission.event_type,
                    room_id=room.room_id,
                    seq=room.seq,
                    data=emission.data,
                )
                self.broadcaster.deliver(emission.target, event)
        for callback in emitter.callbacks:
            callback()

    def _touch(self, room: Room) -> None:
        if room.is_empty:
            if room.empty_since is None:
                room.empty_since = self._clock()
        else:
            room.empty_since = None

    def _evict_members(self, room: Room) -> None:
        for connection_id in self.registry.connections_in(room.room_id):
            self.registry.set_room(connection_id, None)
        for seat in room.seats:
            seat.reset()
        room.members.clear()
        room.owner_id = None
