"""
voiceroom.services.event_router
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

事件路由 —— 校验入站事件、检查前置条件、在房间锁内应用修改并广播派生事件。

处理流程（每条事件）:
  1. 解析 + 校验载荷（失败 → ``ValidationError``，不触碰状态）
  2. 通过注册表解析连接身份，并刷新心跳
  3. 成员 / 角色等前置条件检查
  4. ``RoomSessionStore.apply_mutation`` 内修改状态并登记事件
  5. 存储层在持锁期间按序投递

所有错误只以 ``error`` 事件回给发起连接，不会发给房间内其他成员。
"""
from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from voiceroom.core.errors import (
    AuthorizationError,
    ConflictError,
    ConnectionNotFound,
    DependencyError,
    NotAMember,
    RoomClosed,
    RoomError,
    RoomFull,
)
from voiceroom.core.logging import get_logger
from voiceroom.schemas import events as ev
from voiceroom.schemas.events import InboundEventType, OutboundEvent, OutboundEventType
from voiceroom.schemas.rooms import Role
from voiceroom.services.broadcaster import RoomBroadcaster
from voiceroom.services.connection_registry import Connection, ConnectionRegistry
from voiceroom.services.room_store import Member, Room, RoomEmitter, RoomSessionStore, Seat
from voiceroom.services.seat_allocator import SeatAllocator
from voiceroom.services.wallet import WalletClient

logger = get_logger(__name__)

Handler = Callable[[Connection, Any], Awaitable[None]]


class EventRouter:
    """事件路由。

    Attributes:
        registry: 连接注册表。
        store: 房间会话存储。
        allocator: 麦位分配器。
        broadcaster: 事件广播器（错误与心跳回执直接投递）。
        wallet: 外部钱包客户端。
        self_service_seats: 是否允许成员自助上麦。
        wallet_timeout: 钱包调用超时（秒）。
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        store: RoomSessionStore,
        allocator: SeatAllocator,
        broadcaster: RoomBroadcaster,
        wallet: WalletClient,
        self_service_seats: bool = True,
        wallet_timeout: float = 5.0,
    ) -> None:
        self.registry = registry
        self.store = store
        self.allocator = allocator
        self.broadcaster = broadcaster
        self.wallet = wallet
        self.self_service_seats = self_service_seats
        self.wallet_timeout = wallet_timeout
        self._handlers: dict[InboundEventType, Handler] = {
            InboundEventType.ROOM_JOIN: self._on_join,
            InboundEventType.ROOM_LEAVE: self._on_leave,
            InboundEventType.SEAT_REQUEST: self._on_seat_request,
            InboundEventType.SEAT_ASSIGN: self._on_seat_assign,
            InboundEventType.SEAT_RELEASE: self._on_seat_release,
            InboundEventType.SEAT_LOCK: self._on_seat_lock,
            InboundEventType.SEAT_UNLOCK: self._on_seat_lock,
            InboundEventType.MUTE_TOGGLE: self._on_mute_toggle,
            InboundEventType.SPEAKING_START: self._on_speaking,
            InboundEventType.SPEAKING_STOP: self._on_speaking,
            InboundEventType.VIDEO_TOGGLE: self._on_video_toggle,
            InboundEventType.HAND_RAISE: self._on_hand,
            InboundEventType.HAND_LOWER: self._on_hand,
            InboundEventType.MESSAGE_SEND: self._on_message,
            InboundEventType.TYPING_START: self._on_typing,
            InboundEventType.TYPING_STOP: self._on_typing,
            InboundEventType.GIFT_SEND: self._on_gift,
            InboundEventType.ADMIN_MUTE: self._on_admin_mute,
            InboundEventType.ADMIN_KICK: self._on_admin_kick,
            InboundEventType.ROLE_SET: self._on_role_set,
            InboundEventType.ROOM_CLOSE: self._on_room_close,
            InboundEventType.HEARTBEAT: self._on_heartbeat,
        }

    # ── 入口 ──────────────────────────────────────────────────────────

    async def handle_raw(self, connection_id: str, raw: str | bytes | dict[str, Any]) -> None:
        """解析并处理一条原始入站消息。"""
        try:
            event = ev.parse_inbound(raw)
        except RoomError as e:
            logger.info("入站事件格式错误 | conn=%s | %s", connection_id, e.message)
            self._reject(connection_id, e)
            return
        await self.handle(connection_id, event)

    async def handle(self, connection_id: str, event: Any) -> None:
        """处理一条已校验的入站事件。"""
        event_type = InboundEventType(event.event)
        try:
            conn = self.registry.get(connection_id)
            self.registry.heartbeat(connection_id)
            await self._handlers[event_type](conn, event)
        except RoomError as e:
            logger.info(
                "事件被拒绝 | conn=%s | event=%s | code=%s | %s",
                connection_id, event_type.value, e.code, e.message,
            )
            self._reject(connection_id, e, event.ref)
        except Exception as e:
            logger.error(
                "事件处理异常 | conn=%s | event=%s | %s",
                connection_id, event_type.value, e, exc_info=True,
            )
            self.broadcaster.deliver(
                connection_id,
                OutboundEvent.error("INTERNAL_ERROR", "服务器内部错误", event.ref),
            )

    # ── 可复用操作（供在线状态巡检、REST 接口调用）────────────────────

    async def leave_room(
        self,
        user_id: str,
        room_id: str,
        connection_id: str | None = None,
        reason: str = "leave",
        strict: bool = False,
    ) -> bool:
        """让用户（的某个连接）离开房间。

        同一用户在该房间还有其他连接时只解除本连接，成员关系保留。

        Args:
            user_id: 离开的用户。
            room_id: 目标房间。
            connection_id: 发起离开的连接，为空表示只按用户清理。
            reason: 离开原因，随 ``ROOM_USER_LEFT`` 广播。
            strict: 为 True 时非成员抛出 ``NotAMember``。

        Returns:
            是否真正移除了成员关系。
        """

        def _leave(room: Room, emit: RoomEmitter) -> bool:
            if not room.is_member(user_id):
                if strict:
                    raise NotAMember(f"用户 {user_id} 不在房间 {room_id} 中")
                if connection_id is not None:
                    self.registry.set_room(connection_id, None)
                return False

            if connection_id is not None:
                self.registry.set_room(connection_id, None)
                emit.deliver(connection_id, OutboundEventType.ROOM_LEFT, {"room_id": room_id, "reason": reason})
            if self.registry.user_connections_in(user_id, room_id):
                return False

            self._remove_member(room, user_id, emit, reason)
            return True

        removed = await self.store.apply_mutation(room_id, _leave)
        if removed:
            logger.info("用户离开房间 | room=%s | user=%s | reason=%s", room_id, user_id, reason)
        return removed

    async def close_room(self, room_id: str, actor_id: str | None = None, reason: str | None = None) -> None:
        """关闭房间。``actor_id`` 非空时要求其为房主或管理员。"""

        def _authorize(room: Room) -> None:
            if actor_id is not None:
                self._require_role(room.member(actor_id), Role.ADMIN)

        await self.store.close(room_id, reason=reason, check=_authorize)

    # ── 房间 ──────────────────────────────────────────────────────────

    async def _on_join(self, conn: Connection, event: ev.JoinRoom) -> None:
        room_id = event.room_id
        if room_id in self.store:
            # 切换房间前先做预检，避免离开旧房间后加入失败
            target = self.store.get(room_id)
            if target.closed:
                raise RoomClosed(f"房间 {room_id} 已关闭")
            if not target.is_member(conn.user_id) and len(target.members) >= target.max_members:
                raise RoomFull(f"房间 {room_id} 成员已满")
        if conn.room_id is not None and conn.room_id != room_id:
            await self.leave_room(conn.user_id, conn.room_id, conn.connection_id, reason="switch")

        def _join(room: Room, emit: RoomEmitter) -> None:
            # 等锁期间连接可能已被清理，此时不能再建立成员关系
            if self.registry.find(conn.connection_id) is None:
                raise ConnectionNotFound(f"连接 {conn.connection_id} 已断开")
            member = room.members.get(conn.user_id)
            is_new = member is None
            if member is None:
                if len(room.members) >= room.max_members:
                    raise RoomFull(f"房间 {room_id} 成员已满")
                role = Role.OWNER if room.owner_id is None else Role.MEMBER
                member = Member(user_id=conn.user_id, role=role, joined_at=time.time())
                room.members[conn.user_id] = member
                if role is Role.OWNER:
                    room.owner_id = conn.user_id

            self.registry.set_room(conn.connection_id, room_id)
            member_data = room.member_data(member).model_dump(mode="json")
            emit.deliver(
                conn.connection_id,
                OutboundEventType.ROOM_JOINED,
                {"room": room.snapshot().model_dump(mode="json"), "self": member_data},
            )
            if is_new:
                emit.broadcast(OutboundEventType.ROOM_USER_JOINED, member_data, exclude=conn.connection_id)

        await self.store.apply_mutation(room_id, _join, create=True)
        logger.info("用户加入房间 | room=%s | user=%s", room_id, conn.user_id)

    async def _on_leave(self, conn: Connection, event: ev.LeaveRoom) -> None:
        room_id = self._require_room(conn)
        await self.leave_room(conn.user_id, room_id, conn.connection_id, reason="leave", strict=True)

    async def _on_room_close(self, conn: Connection, event: ev.RoomClose) -> None:
        room_id = self._require_room(conn)
        await self.close_room(room_id, actor_id=conn.user_id, reason=f"closed by {conn.user_id}")

    # ── 麦位 ──────────────────────────────────────────────────────────

    async def _on_seat_request(self, conn: Connection, event: ev.SeatRequest) -> None:
        room_id = self._require_room(conn)
        if not self.self_service_seats:
            raise AuthorizationError("本房间不允许自助上麦")

        def _request(room: Room, emit: RoomEmitter) -> None:
            seat = self.allocator.allocate(room, conn.user_id, event.preferred_index)
            emit.broadcast(OutboundEventType.SEAT_UPDATED, room.seat_data(seat).model_dump(mode="json"))

        await self.store.apply_mutation(room_id, _request)

    async def _on_seat_assign(self, conn: Connection, event: ev.SeatAssign) -> None:
        room_id = self._require_room(conn)
        target_id = event.target_user_id or conn.user_id

        def _assign(room: Room, emit: RoomEmitter) -> None:
            actor = room.member(conn.user_id)
            if target_id == conn.user_id:
                if not self.self_service_seats:
                    self._require_role(actor, Role.ADMIN)
            else:
                self._require_role(actor, Role.ADMIN)
            room.member(target_id)
            seat = self.allocator.assign(room, target_id, event.index)
            emit.broadcast(OutboundEventType.SEAT_UPDATED, room.seat_data(seat).model_dump(mode="json"))

        await self.store.apply_mutation(room_id, _assign)

    async def _on_seat_release(self, conn: Connection, event: ev.SeatRelease) -> None:
        if conn.room_id is None:
            return

        def _release(room: Room, emit: RoomEmitter) -> None:
            seat = self.allocator.release(room, conn.user_id)
            if seat is not None:
                emit.broadcast(OutboundEventType.SEAT_UPDATED, room.seat_data(seat).model_dump(mode="json"))

        await self.store.apply_mutation(conn.room_id, _release)

    async def _on_seat_lock(self, conn: Connection, event: ev.SeatLock | ev.SeatUnlock) -> None:
        room_id = self._require_room(conn)
        locking = event.event == InboundEventType.SEAT_LOCK.value

        def _lock(room: Room, emit: RoomEmitter) -> None:
            self._require_role(room.member(conn.user_id), Role.ADMIN)
            if locking:
                seat = self.allocator.lock(room, event.index)
            else:
                seat = self.allocator.unlock(room, event.index)
            emit.broadcast(OutboundEventType.SEAT_UPDATED, room.seat_data(seat).model_dump(mode="json"))

        await self.store.apply_mutation(room_id, _lock)

    # ── 语音 / 视频 / 举手 ────────────────────────────────────────────

    async def _on_mute_toggle(self, conn: Connection, event: ev.MuteToggle) -> None:
        room_id = self._require_room(conn)

        def _mute(room: Room, emit: RoomEmitter) -> None:
            seat = self._require_seat(room, conn.user_id)
            seat.muted = (not seat.muted) if event.muted is None else event.muted
            if seat.muted:
                seat.speaking = False
            emit.broadcast(OutboundEventType.PRESENCE_UPDATE, self._presence(room, seat))

        await self.store.apply_mutation(room_id, _mute)

    async def _on_speaking(self, conn: Connection, event: ev.SpeakingStart | ev.SpeakingStop) -> None:
        room_id = self._require_room(conn)
        speaking = event.event == InboundEventType.SPEAKING_START.value

        def _speak(room: Room, emit: RoomEmitter) -> None:
            seat = self._require_seat(room, conn.user_id)
            if speaking and seat.muted:
                raise AuthorizationError("静音状态下不能发言")
            if seat.speaking == speaking:
                return
            seat.speaking = speaking
            emit.broadcast(OutboundEventType.PRESENCE_UPDATE, self._presence(room, seat))

        await self.store.apply_mutation(room_id, _speak)

    async def _on_video_toggle(self, conn: Connection, event: ev.VideoToggle) -> None:
        room_id = self._require_room(conn)

        def _video(room: Room, emit: RoomEmitter) -> None:
            seat = self._require_seat(room, conn.user_id)
            seat.video_on = (not seat.video_on) if event.video_on is None else event.video_on
            emit.broadcast(OutboundEventType.PRESENCE_UPDATE, self._presence(room, seat))

        await self.store.apply_mutation(room_id, _video)

    async def _on_hand(self, conn: Connection, event: ev.HandRaise | ev.HandLower) -> None:
        room_id = self._require_room(conn)
        raised = event.event == InboundEventType.HAND_RAISE.value

        def _hand(room: Room, emit: RoomEmitter) -> None:
            member = room.member(conn.user_id)
            if member.hand_raised == raised:
                return
            member.hand_raised = raised
            seat = room.seat_of(conn.user_id)
            emit.broadcast(
                OutboundEventType.PRESENCE_UPDATE,
                {
                    "user_id": conn.user_id,
                    "hand_raised": raised,
                    "seat_index": seat.index if seat else None,
                },
            )

        await self.store.apply_mutation(room_id, _hand)

    # ── 聊天 ──────────────────────────────────────────────────────────

    async def _on_message(self, conn: Connection, event: ev.MessageSend) -> None:
        room_id = self._require_room(conn)

        def _message(room: Room, emit: RoomEmitter) -> None:
            room.member(conn.user_id)
            emit.broadcast(
                OutboundEventType.MESSAGE_RECEIVED,
                {
                    "message_id": uuid.uuid4().hex,
                    "user_id": conn.user_id,
                    "content": event.content,
                    "type": event.type,
                },
            )

        await self.store.apply_mutation(room_id, _message)

    async def _on_typing(self, conn: Connection, event: ev.TypingStart | ev.TypingStop) -> None:
        room_id = self._require_room(conn)
        event_type = (
            OutboundEventType.TYPING_START
            if event.event == InboundEventType.TYPING_START.value
            else OutboundEventType.TYPING_STOP
        )

        def _typing(room: Room, emit: RoomEmitter) -> None:
            room.member(conn.user_id)
            emit.broadcast(event_type, {"user_id": conn.user_id}, exclude=conn.connection_id)

        await self.store.apply_mutation(room_id, _typing)

    # ── 礼物 ──────────────────────────────────────────────────────────

    async def _on_gift(self, conn: Connection, event: ev.GiftSend) -> None:
        room_id = self._require_room(conn)

        async def _gift(room: Room, emit: RoomEmitter) -> None:
            room.member(conn.user_id)
            if not room.is_member(event.receiver_id):
                raise NotAMember(f"收礼人 {event.receiver_id} 不在房间中")

            try:
                receipt = await asyncio.wait_for(
                    self.wallet.send_gift(
                        sender_id=conn.user_id,
                        receiver_id=event.receiver_id,
                        gift_id=event.gift_id,
                        quantity=event.quantity,
                        room_id=room_id,
                    ),
                    timeout=self.wallet_timeout,
                )
            except RoomError:
                raise
            except asyncio.TimeoutError as e:
                raise DependencyError("钱包服务超时") from e
            except Exception as e:
                logger.error("钱包调用异常: %s", e, exc_info=True)
                raise DependencyError("钱包服务异常") from e

            room.contributions[conn.user_id] = (
                room.contributions.get(conn.user_id, 0) + receipt.coins_spent
            )
            emit.broadcast(OutboundEventType.GIFT_RECEIVED, receipt.to_dict())

        await self.store.apply_mutation(room_id, _gift)
        logger.info(
            "礼物已送出 | room=%s | sender=%s | receiver=%s | gift=%s x%d",
            room_id, conn.user_id, event.receiver_id, event.gift_id, event.quantity,
        )

    # ── 管理 ──────────────────────────────────────────────────────────

    async def _on_admin_mute(self, conn: Connection, event: ev.AdminMute) -> None:
        room_id = self._require_room(conn)

        def _admin_mute(room: Room, emit: RoomEmitter) -> None:
            self._require_outranks(room, conn.user_id, event.target_user_id)
            seat = room.seat_of(event.target_user_id)
            if seat is None:
                raise ConflictError(f"用户 {event.target_user_id} 未上麦")
            seat.muted = event.muted
            if seat.muted:
                seat.speaking = False
            emit.broadcast(
                OutboundEventType.USER_MUTED,
                {"user_id": event.target_user_id, "muted": event.muted, "by": conn.user_id},
            )
            emit.broadcast(OutboundEventType.PRESENCE_UPDATE, self._presence(room, seat))

        await self.store.apply_mutation(room_id, _admin_mute)

    async def _on_admin_kick(self, conn: Connection, event: ev.AdminKick) -> None:
        room_id = self._require_room(conn)
        target_id = event.target_user_id

        def _kick(room: Room, emit: RoomEmitter) -> None:
            self._require_outranks(room, conn.user_id, target_id)
            payload = {"user_id": target_id, "by": conn.user_id, "reason": event.reason}
            for connection_id in self.registry.user_connections_in(target_id, room_id):
                self.registry.set_room(connection_id, None)
                emit.deliver(connection_id, OutboundEventType.USER_KICKED, payload)
            emit.broadcast(OutboundEventType.USER_KICKED, payload)
            self._remove_member(room, target_id, emit, reason="kicked")

        await self.store.apply_mutation(room_id, _kick)
        logger.info("用户被踢出房间 | room=%s | user=%s | by=%s", room_id, target_id, conn.user_id)

    async def _on_role_set(self, conn: Connection, event: ev.RoleSet) -> None:
        room_id = self._require_room(conn)

        def _role(room: Room, emit: RoomEmitter) -> None:
            actor = room.member(conn.user_id)
            target = room.member(event.target_user_id)
            if actor.user_id == target.user_id:
                raise AuthorizationError("不能修改自己的角色")

            if event.role is Role.OWNER:
                if actor.role is not Role.OWNER:
                    raise AuthorizationError("只有房主可以转让房主")
                target.role = Role.OWNER
                actor.role = Role.ADMIN
                room.owner_id = target.user_id
                changed = [target, actor]
            else:
                if target.role is Role.OWNER:
                    raise AuthorizationError("房主角色只能通过转让变更")
                self._require_role(actor, Role.MODERATOR)
                if actor.role.rank < target.role.rank or actor.role.rank < event.role.rank:
                    raise AuthorizationError("权限不足，无法设置该角色")
                target.role = event.role
                changed = [target]

            for member in changed:
                emit.broadcast(
                    OutboundEventType.ROLE_UPDATED,
                    {"user_id": member.user_id, "role": member.role.value, "by": conn.user_id},
                )

        await self.store.apply_mutation(room_id, _role)

    async def _on_heartbeat(self, conn: Connection, event: ev.Heartbeat) -> None:
        self.broadcaster.deliver(
            conn.connection_id,
            OutboundEvent(event=OutboundEventType.HEARTBEAT_ACK, data={"room_id": conn.room_id}),
        )

    # ── 内部 ──────────────────────────────────────────────────────────

    def _remove_member(self, room: Room, user_id: str, emit: RoomEmitter, reason: str) -> None:
        """移除成员：释放麦位、删除成员关系，房主离开时移交房主。"""
        seat = self.allocator.release(room, user_id)
        if seat is not None:
            emit.broadcast(OutboundEventType.SEAT_UPDATED, room.seat_data(seat).model_dump(mode="json"))

        member = room.members.pop(user_id)
        emit.broadcast(OutboundEventType.ROOM_USER_LEFT, {"user_id": user_id, "reason": reason})

        if member.role is Role.OWNER:
            room.owner_id = None
            successor = room.pick_successor()
            if successor is not None:
                successor.role = Role.OWNER
                room.owner_id = successor.user_id
                emit.broadcast(
                    OutboundEventType.ROLE_UPDATED,
                    {"user_id": successor.user_id, "role": Role.OWNER.value, "by": None},
                )

    @staticmethod
    def _require_room(conn: Connection) -> str:
        if conn.room_id is None:
            raise NotAMember("尚未加入任何房间")
        return conn.room_id

    @staticmethod
    def _require_seat(room: Room, user_id: str) -> Seat:
        room.member(user_id)
        seat = room.seat_of(user_id)
        if seat is None:
            raise AuthorizationError("未上麦")
        return seat

    @staticmethod
    def _require_role(member: Member, minimum: Role) -> None:
        if member.role.rank < minimum.rank:
            raise AuthorizationError(f"需要 {minimum.value} 及以上角色")

    def _require_outranks(self, room: Room, actor_id: str, target_id: str) -> None:
        actor = room.member(actor_id)
        target = room.member(target_id)
        self._require_role(actor, Role.MODERATOR)
        if actor.role.rank <= target.role.rank:
            raise AuthorizationError("只能管理角色低于自己的成员")

    @staticmethod
    def _presence(room: Room, seat: Seat) -> dict[str, Any]:
        data = room.seat_data(seat).model_dump(mode="json")
        data["user_id"] = seat.occupant_id
        return data

    def _reject(self, connection_id: str, error: RoomError, ref: str | None = None) -> None:
        self.broadcaster.deliver(connection_id, OutboundEvent.error(error.code, error.message, ref))
